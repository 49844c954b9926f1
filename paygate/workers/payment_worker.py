from __future__ import annotations

import asyncio
import logging
from typing import Any

from paygate.domain.enums import Lane
from paygate.domain.errors import PermanentDataError
from paygate.domain.models import Job
from paygate.domain.statuses import PaymentStatus
from paygate.processors.base import OutcomeDecider, PaymentOutcome
from paygate.queue.base import JobQueue
from paygate.repositories.base import EntityStore
from paygate.utils.clock import Clock, utc_now
from paygate.webhooks.events import build_payment_payload, enqueue_webhook, payment_event

logger = logging.getLogger(__name__)


class PaymentWorker:
    """Consumes payment-processing jobs and settles pending payments."""

    lane = Lane.PAYMENT

    def __init__(
        self,
        store: EntityStore,
        queue: JobQueue,
        decider: OutcomeDecider,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.decider = decider
        self.clock = clock

    async def handle(self, job: Job) -> dict[str, Any]:
        payment_id = job.payload.get("payment_id")
        if not payment_id:
            raise PermanentDataError("payment job without payment_id", context={"job_id": job.id})
        payment = await asyncio.to_thread(self.store.get_payment, payment_id)
        if payment is None:
            raise PermanentDataError(f"Payment {payment_id} not found", context={"job_id": job.id})
        if payment.status.is_terminal:
            logger.info(
                "payment already settled, skipping",
                extra={"payment_id": payment_id, "status": payment.status},
            )
            return {"payment_id": payment_id, "status": payment.status.value, "changed": False}

        logger.info("processing payment", extra={"payment_id": payment_id, "method": payment.method})
        outcome = await self.decider.decide(payment)
        # Lock waits happen off the event loop so other lanes keep running
        return await asyncio.to_thread(self._settle, payment_id, outcome)

    def _settle(self, payment_id: str, outcome: PaymentOutcome) -> dict[str, Any]:
        to_status = PaymentStatus.SUCCESS if outcome.success else PaymentStatus.FAILED
        with self.store.lock_payment(payment_id):
            now = self.clock()
            updated = self.store.transition_payment(
                payment_id,
                to_status=to_status,
                now=now,
                error_code=outcome.error_code,
                error_description=outcome.error_description,
            )
            if updated is None:
                # Another delivery of this job settled it first
                current = self.store.get_payment(payment_id)
                status = current.status.value if current else "missing"
                logger.info("payment settled concurrently", extra={"payment_id": payment_id, "status": status})
                return {"payment_id": payment_id, "status": status, "changed": False}
            event = payment_event(updated)
            enqueue_webhook(self.queue, updated.merchant_id, event, build_payment_payload(event, updated, now))

        logger.info(
            "payment processed",
            extra={"payment_id": payment_id, "status": updated.status, "event": event},
        )
        return {"payment_id": payment_id, "status": updated.status.value, "changed": True}
