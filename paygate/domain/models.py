from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .enums import Lane, PaymentMethod
from .statuses import JobStatus, PaymentStatus, RefundStatus, WebhookStatus


@dataclass
class Payment:
    """Internal representation of a payment."""

    id: str
    order_id: str
    merchant_id: str
    amount: int
    currency: str
    method: PaymentMethod
    vpa: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    captured: bool = False
    error_code: str | None = None
    error_description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time view carried in webhook payloads."""
        data: dict[str, Any] = {
            "id": self.id,
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "method": self.method.value,
            "vpa": self.vpa,
            "status": self.status.value,
            "captured": self.captured,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if self.status is PaymentStatus.FAILED:
            data["error_code"] = self.error_code
            data["error_description"] = self.error_description
        return data


@dataclass
class Refund:
    """A refund requested against a successful payment."""

    id: str
    payment_id: str
    merchant_id: str
    amount: int
    reason: str | None = None
    status: RefundStatus = RefundStatus.PENDING
    created_at: datetime | None = None
    processed_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "reason": self.reason,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


@dataclass
class IdempotencyRecord:
    """Cached response for a (merchant, key) creation request."""

    key: str
    merchant_id: str
    response: str
    created_at: datetime
    expires_at: datetime
    request_hash: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class WebhookLogEntry:
    """Delivery record for one webhook event."""

    id: str
    merchant_id: str
    event: str
    payload: str
    status: WebhookStatus = WebhookStatus.PENDING
    attempts: int = 0
    created_at: datetime | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    response_code: int | None = None
    response_body: str | None = None


@dataclass
class MerchantWebhookConfig:
    """Where and how a merchant receives webhooks."""

    merchant_id: str
    webhook_url: str | None
    webhook_secret: str


@dataclass
class Merchant:
    """Represents a merchant authorized to use the API."""

    id: str
    name: str
    api_key: str
    api_secret: str
    active: bool = True


@dataclass
class Job:
    """A unit of work on one queue lane."""

    id: str
    lane: Lane
    payload: dict[str, Any]
    not_before: datetime
    max_attempts: int
    attempts: int = 0
    status: JobStatus = JobStatus.QUEUED
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
