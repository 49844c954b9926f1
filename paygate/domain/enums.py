from __future__ import annotations

from enum import Enum


class PaymentMethod(str, Enum):
    """Supported payment methods."""

    UPI = "upi"
    CARD = "card"


class Lane(str, Enum):
    """Independently consumed job queue partitions."""

    PAYMENT = "payment-processing"
    REFUND = "refund-processing"
    WEBHOOK = "webhook-delivery"


class WebhookEvent(str, Enum):
    """Events notified to merchants."""

    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    REFUND_PROCESSED = "refund.processed"


class Outcome(str, Enum):
    """HTTP-status class of an admission result."""

    CREATED = "created"
    OK = "ok"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        mapping = {
            self.CREATED: 201,
            self.OK: 200,
            self.BAD_REQUEST: 400,
            self.NOT_FOUND: 404,
            self.CONFLICT: 409,
            self.INTERNAL: 500,
        }
        return mapping[self]
