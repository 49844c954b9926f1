from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

from conftest import MERCHANT_ID, consumer_for
from paygate.domain.dtos import PaymentCreateRequest, RefundCreateRequest
from paygate.domain.enums import Lane
from paygate.domain.models import Refund
from paygate.domain.statuses import JobStatus, PaymentStatus, RefundStatus


def _create_payment(services) -> str:
    request = PaymentCreateRequest(order_id="order_1", method="upi", amount=50000, vpa="user@paytm")
    return services.admission.create_payment(MERCHANT_ID, request).body["id"]


def _claim(queue, lane):
    return queue.claim(lane, "test-worker#0", claim_ttl=timedelta(minutes=1))


def test_payment_worker_settles_success_and_queues_webhook(services) -> None:
    payment_id = _create_payment(services)

    processed = asyncio.run(consumer_for(services, services.payment_worker).drain())

    assert processed == 1
    payment = services.store.get_payment(payment_id)
    assert payment.status is PaymentStatus.SUCCESS
    assert payment.error_code is None
    [webhook_job] = services.queue.pending(Lane.WEBHOOK)
    assert webhook_job.payload["merchant_id"] == MERCHANT_ID
    assert webhook_job.payload["event"] == "payment.success"
    assert webhook_job.payload["payload"]["data"]["payment"]["id"] == payment_id
    assert webhook_job.payload["payload"]["data"]["payment"]["status"] == "success"


def test_payment_worker_records_failure(make_services) -> None:
    services = make_services(success=False)
    payment_id = _create_payment(services)

    asyncio.run(consumer_for(services, services.payment_worker).drain())

    payment = services.store.get_payment(payment_id)
    assert payment.status is PaymentStatus.FAILED
    assert payment.error_code == "PAYMENT_FAILED"
    assert payment.error_description == "Payment processing failed"
    [webhook_job] = services.queue.pending(Lane.WEBHOOK)
    assert webhook_job.payload["event"] == "payment.failed"
    assert webhook_job.payload["payload"]["data"]["payment"]["error_code"] == "PAYMENT_FAILED"


def test_redelivered_payment_job_is_a_noop(services) -> None:
    payment_id = _create_payment(services)
    job = _claim(services.queue, Lane.PAYMENT)

    first = asyncio.run(services.payment_worker.handle(job))
    second = asyncio.run(services.payment_worker.handle(job))

    assert first == {"payment_id": payment_id, "status": "success", "changed": True}
    assert second == {"payment_id": payment_id, "status": "success", "changed": False}
    assert len(services.queue.pending(Lane.WEBHOOK)) == 1


def test_payment_job_for_missing_payment_fails_without_retry(services) -> None:
    job = services.queue.enqueue(Lane.PAYMENT, {"payment_id": "pay_missing"})

    asyncio.run(consumer_for(services, services.payment_worker).drain())

    stored = services.queue.jobs[job.id]
    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 1
    assert "pay_missing" in stored.last_error


def test_refund_worker_processes_and_queues_webhook(services) -> None:
    payment_id = _create_payment(services)
    asyncio.run(consumer_for(services, services.payment_worker).drain())
    refund_id = services.admission.create_refund(
        MERCHANT_ID, payment_id, RefundCreateRequest(amount=20000, reason="damaged")
    ).body["id"]

    asyncio.run(consumer_for(services, services.refund_worker).drain())

    refund = services.store.get_refund(refund_id)
    assert refund.status is RefundStatus.PROCESSED
    assert refund.processed_at == services.admission.clock()
    refund_hooks = [j for j in services.queue.pending(Lane.WEBHOOK) if j.payload["event"] == "refund.processed"]
    assert len(refund_hooks) == 1
    data = refund_hooks[0].payload["payload"]["data"]["refund"]
    assert data["id"] == refund_id
    assert data["status"] == "processed"
    assert data["reason"] == "damaged"


def test_processed_refund_keeps_counting_against_payment(services) -> None:
    payment_id = _create_payment(services)
    asyncio.run(consumer_for(services, services.payment_worker).drain())
    services.admission.create_refund(MERCHANT_ID, payment_id, RefundCreateRequest(amount=50000))

    asyncio.run(consumer_for(services, services.refund_worker).drain())

    assert services.store.sum_active_refunds(payment_id) == 50000


def test_redelivered_refund_job_is_a_noop(services) -> None:
    payment_id = _create_payment(services)
    asyncio.run(consumer_for(services, services.payment_worker).drain())
    services.admission.create_refund(MERCHANT_ID, payment_id, RefundCreateRequest(amount=100))
    job = _claim(services.queue, Lane.REFUND)

    first = asyncio.run(services.refund_worker.handle(job))
    second = asyncio.run(services.refund_worker.handle(job))

    assert first["changed"] is True
    assert second["changed"] is False
    webhook_events = [j.payload["event"] for j in services.queue.pending(Lane.WEBHOOK)]
    assert webhook_events.count("refund.processed") == 1


def _refund_job_outcome(services, refund_id: str):
    job = services.queue.enqueue(Lane.REFUND, {"refund_id": refund_id})
    asyncio.run(consumer_for(services, services.refund_worker).drain())
    return services.queue.jobs[job.id]


def _orphan_refund(services, clock, payment_id: str) -> Refund:
    refund = Refund(id="rfnd_orphan", payment_id=payment_id, merchant_id=MERCHANT_ID, amount=100, created_at=clock.now)
    services.store.insert_refund(refund)
    return refund


def test_refund_job_for_missing_refund_fails_without_retry(services) -> None:
    stored = _refund_job_outcome(services, "rfnd_missing")

    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 1
    assert "rfnd_missing" in stored.last_error


def test_refund_job_with_missing_payment_fails_without_retry(services, clock) -> None:
    refund = _orphan_refund(services, clock, "pay_gone")

    stored = _refund_job_outcome(services, refund.id)

    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 1
    assert services.store.get_refund(refund.id).status is RefundStatus.PENDING


def test_refund_job_for_unsettled_payment_fails_without_retry(services, clock) -> None:
    payment_id = _create_payment(services)
    refund = _orphan_refund(services, clock, payment_id)

    stored = _refund_job_outcome(services, refund.id)

    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 1
    assert "refundable" in stored.last_error
    assert services.store.get_refund(refund.id).status is RefundStatus.PENDING
    assert [j for j in services.queue.pending(Lane.WEBHOOK) if j.payload["event"] == "refund.processed"] == []


def test_refund_waiting_on_payment_lock_does_not_stall_webhooks(services, receiver) -> None:
    payment_id = _create_payment(services)
    asyncio.run(consumer_for(services, services.payment_worker).drain())
    refund_id = services.admission.create_refund(
        MERCHANT_ID, payment_id, RefundCreateRequest(amount=100)
    ).body["id"]

    held = threading.Event()
    release = threading.Event()

    def hold_lock() -> None:
        with services.store.lock_payment(payment_id):
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    held.wait(timeout=5)

    async def scenario() -> tuple[bool, bool]:
        refund_task = asyncio.create_task(consumer_for(services, services.refund_worker).run_once())
        delivered = await asyncio.wait_for(
            consumer_for(services, services.webhook_engine).run_once(), timeout=2
        )
        refund_blocked = not refund_task.done()
        release.set()
        await refund_task
        return delivered, refund_blocked

    try:
        delivered, refund_blocked = asyncio.run(scenario())
    finally:
        release.set()
        holder.join()

    assert delivered
    assert refund_blocked
    assert len(receiver.requests) == 1
    assert services.store.get_refund(refund_id).status is RefundStatus.PROCESSED
