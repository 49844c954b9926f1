from __future__ import annotations

from datetime import datetime
from typing import Any

from paygate.domain.enums import Lane, WebhookEvent
from paygate.domain.models import Job, Payment, Refund
from paygate.domain.statuses import PaymentStatus
from paygate.queue.base import JobQueue


def payment_event(payment: Payment) -> WebhookEvent:
    if payment.status is PaymentStatus.SUCCESS:
        return WebhookEvent.PAYMENT_SUCCESS
    if payment.status is PaymentStatus.FAILED:
        return WebhookEvent.PAYMENT_FAILED
    raise ValueError(f"no webhook event for payment status {payment.status.value}")


def build_payment_payload(event: WebhookEvent, payment: Payment, now: datetime) -> dict[str, Any]:
    return {
        "event": event.value,
        "timestamp": int(now.timestamp()),
        "data": {"payment": payment.snapshot()},
    }


def build_refund_payload(event: WebhookEvent, refund: Refund, now: datetime) -> dict[str, Any]:
    return {
        "event": event.value,
        "timestamp": int(now.timestamp()),
        "data": {"refund": refund.snapshot()},
    }


def enqueue_webhook(
    queue: JobQueue, merchant_id: str, event: WebhookEvent, payload: dict[str, Any]
) -> Job:
    """Queue the first delivery attempt of an event."""
    return queue.enqueue(
        Lane.WEBHOOK,
        {"merchant_id": merchant_id, "event": event.value, "payload": payload},
    )
