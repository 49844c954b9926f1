from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .models import Payment, Refund, WebhookLogEntry
from .statuses import PaymentStatus, RefundStatus, WebhookStatus


class PaymentCreateRequest(BaseModel):
    """Request body for creating a payment.

    Presence of ``order_id`` and ``method`` is checked by the admission layer so
    that missing fields surface as BAD_REQUEST rather than a schema error.
    """

    order_id: str | None = None
    method: str | None = Field(default=None, description="Payment method: upi|card")
    amount: int | None = Field(default=None, description="Amount in minor units")
    currency: str | None = None
    vpa: str | None = Field(default=None, description="Virtual payment address for UPI")


class RefundCreateRequest(BaseModel):
    """Request body for creating a refund."""

    amount: int | None = None
    reason: str | None = None


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    amount: int
    currency: str
    method: str
    vpa: str | None = None
    status: PaymentStatus
    captured: bool = False
    error_code: str | None = None
    error_description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method.value,
            vpa=payment.vpa,
            status=payment.status,
            captured=payment.captured,
            error_code=payment.error_code,
            error_description=payment.error_description,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class RefundResponse(BaseModel):
    id: str
    payment_id: str
    amount: int
    reason: str | None = None
    status: RefundStatus
    created_at: datetime | None = None
    processed_at: datetime | None = None

    @classmethod
    def from_refund(cls, refund: Refund) -> "RefundResponse":
        return cls(
            id=refund.id,
            payment_id=refund.payment_id,
            amount=refund.amount,
            reason=refund.reason,
            status=refund.status,
            created_at=refund.created_at,
            processed_at=refund.processed_at,
        )


class WebhookLogSummary(BaseModel):
    id: str
    event: str
    status: WebhookStatus
    attempts: int
    created_at: datetime | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    response_code: int | None = None

    @classmethod
    def from_entry(cls, entry: WebhookLogEntry) -> "WebhookLogSummary":
        return cls(
            id=entry.id,
            event=entry.event,
            status=entry.status,
            attempts=entry.attempts,
            created_at=entry.created_at,
            last_attempt_at=entry.last_attempt_at,
            next_retry_at=entry.next_retry_at,
            response_code=entry.response_code,
        )


class WebhookLogPage(BaseModel):
    data: list[WebhookLogSummary]
    total: int
    limit: int
    offset: int


class WebhookRetryResponse(BaseModel):
    id: str
    status: WebhookStatus
    message: str = "Webhook retry scheduled"


class JobQueueStatus(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    worker_status: str = "running"
