from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Status of a payment."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class RefundStatus(str, Enum):
    """Status of a refund."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

    @classmethod
    def counted_against_payment(cls) -> tuple["RefundStatus", ...]:
        """Statuses whose amounts consume the refundable balance of a payment."""

        return (cls.PENDING, cls.PROCESSED)


class WebhookStatus(str, Enum):
    """Delivery status of a webhook log entry."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Lifecycle of a queued job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
