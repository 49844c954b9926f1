from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from paygate.domain.enums import Lane, WebhookEvent
from paygate.domain.errors import PermanentDataError
from paygate.domain.models import Job, Refund
from paygate.domain.statuses import PaymentStatus, RefundStatus
from paygate.queue.base import JobQueue
from paygate.repositories.base import EntityStore
from paygate.utils.clock import Clock, utc_now
from paygate.webhooks.events import build_refund_payload, enqueue_webhook

logger = logging.getLogger(__name__)


class RefundWorker:
    """Consumes refund-processing jobs. Every admitted refund ends processed."""

    lane = Lane.REFUND

    def __init__(
        self,
        store: EntityStore,
        queue: JobQueue,
        *,
        delay_range: tuple[float, float] = (0.0, 0.0),
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.delay_range = delay_range
        self.clock = clock

    async def handle(self, job: Job) -> dict[str, Any]:
        refund_id = job.payload.get("refund_id")
        if not refund_id:
            raise PermanentDataError("refund job without refund_id", context={"job_id": job.id})
        refund = await asyncio.to_thread(self.store.get_refund, refund_id)
        if refund is None:
            raise PermanentDataError(f"Refund {refund_id} not found", context={"job_id": job.id})
        if refund.status is not RefundStatus.PENDING:
            logger.info("refund already settled, skipping", extra={"refund_id": refund_id, "status": refund.status})
            return {"refund_id": refund_id, "status": refund.status.value, "changed": False}

        await asyncio.to_thread(self._check_parent, refund.payment_id, refund_id)
        low, high = self.delay_range
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))
        return await asyncio.to_thread(self._settle, refund)

    def _settle(self, refund: Refund) -> dict[str, Any]:
        with self.store.lock_payment(refund.payment_id):
            # Parent may have changed while the settlement delay elapsed
            self._check_parent(refund.payment_id, refund.id)
            now = self.clock()
            processed = self.store.mark_refund_processed(refund.id, now=now)
            if processed is None:
                logger.info("refund settled concurrently", extra={"refund_id": refund.id})
                return {"refund_id": refund.id, "status": RefundStatus.PROCESSED.value, "changed": False}
            event = WebhookEvent.REFUND_PROCESSED
            enqueue_webhook(self.queue, processed.merchant_id, event, build_refund_payload(event, processed, now))

        logger.info(
            "refund processed",
            extra={"refund_id": refund.id, "payment_id": processed.payment_id, "amount": processed.amount},
        )
        return {"refund_id": refund.id, "status": processed.status.value, "changed": True}

    def _check_parent(self, payment_id: str, refund_id: str) -> None:
        payment = self.store.get_payment(payment_id)
        if payment is None:
            raise PermanentDataError(
                f"Payment {payment_id} not found", context={"refund_id": refund_id}
            )
        if payment.status is not PaymentStatus.SUCCESS:
            raise PermanentDataError(
                f"Payment not in refundable state: {payment.status.value}",
                context={"refund_id": refund_id},
            )
