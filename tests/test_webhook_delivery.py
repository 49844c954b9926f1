from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from conftest import MERCHANT_ID, WEBHOOK_SECRET, WEBHOOK_URL, consumer_for
from paygate.domain.dtos import PaymentCreateRequest
from paygate.domain.enums import Lane
from paygate.domain.errors import NotFoundError
from paygate.domain.models import MerchantWebhookConfig
from paygate.domain.statuses import JobStatus, WebhookStatus
from paygate.webhooks.backoff import PRODUCTION_SCHEDULE, TEST_SCHEDULE
from paygate.webhooks.signing import EVENT_HEADER, SIGNATURE_HEADER, canonical_bytes, sign, verify


def _settle_payment(services) -> str:
    request = PaymentCreateRequest(order_id="order_1", method="upi", amount=50000, vpa="user@paytm")
    payment_id = services.admission.create_payment(MERCHANT_ID, request).body["id"]
    asyncio.run(consumer_for(services, services.payment_worker).drain())
    return payment_id


def _deliver(services) -> int:
    return asyncio.run(consumer_for(services, services.webhook_engine).drain())


def _only_entry(services):
    [entry] = services.store.webhook_logs.values()
    return services.store.get_webhook_log(entry.id)


def test_signature_matches_transmitted_bytes(services, receiver) -> None:
    payment_id = _settle_payment(services)

    _deliver(services)

    [request] = receiver.requests
    assert str(request.url) == WEBHOOK_URL
    assert request.headers[EVENT_HEADER] == "payment.success"
    assert request.headers["content-type"] == "application/json"
    assert verify(request.content, WEBHOOK_SECRET, request.headers[SIGNATURE_HEADER])
    body = json.loads(request.content)
    assert body["event"] == "payment.success"
    assert body["data"]["payment"]["id"] == payment_id
    assert isinstance(body["timestamp"], int)

    entry = _only_entry(services)
    assert entry.status is WebhookStatus.SUCCESS
    assert entry.attempts == 1
    assert entry.response_code == 200
    assert entry.payload.encode("utf-8") == request.content


def test_failed_attempt_is_retried_after_backoff(services, receiver, clock) -> None:
    receiver.statuses = [500, 200]
    _settle_payment(services)

    _deliver(services)
    entry = _only_entry(services)
    assert entry.status is WebhookStatus.PENDING
    assert entry.attempts == 1
    assert entry.response_code == 500
    assert entry.response_body == "boom"
    assert entry.next_retry_at == clock.now + TEST_SCHEDULE.delay_before(2)

    # retry is not due yet
    assert _deliver(services) == 0

    clock.advance(seconds=5)
    _deliver(services)

    entry = _only_entry(services)
    assert entry.status is WebhookStatus.SUCCESS
    assert entry.attempts == 2
    assert entry.response_code == 200
    assert entry.next_retry_at is None
    assert len(receiver.requests) == 2
    assert receiver.requests[0].content == receiver.requests[1].content


def test_delivery_gives_up_after_max_attempts(services, receiver, clock) -> None:
    receiver.statuses = [500]
    _settle_payment(services)

    for _ in range(8):
        _deliver(services)
        clock.advance(seconds=30)

    entry = _only_entry(services)
    assert entry.status is WebhookStatus.FAILED
    assert entry.attempts == 5
    assert entry.next_retry_at is None
    assert len(receiver.requests) == 5
    assert services.queue.pending(Lane.WEBHOOK) == []


def test_redirect_counts_as_failure(services, receiver) -> None:
    receiver.statuses = [302]
    _settle_payment(services)

    _deliver(services)

    entry = _only_entry(services)
    assert entry.status is WebhookStatus.PENDING
    assert entry.response_code == 302


def test_timeout_is_recorded_without_status_code(make_services) -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    services = make_services(handler=timeout)
    _settle_payment(services)

    _deliver(services)

    entry = _only_entry(services)
    assert entry.status is WebhookStatus.PENDING
    assert entry.attempts == 1
    assert entry.response_code is None
    assert entry.response_body.startswith("ReadTimeout")


def test_merchant_without_url_is_skipped(services, receiver) -> None:
    services.store.save_webhook_config(
        MerchantWebhookConfig(merchant_id=MERCHANT_ID, webhook_url=None, webhook_secret=WEBHOOK_SECRET)
    )
    _settle_payment(services)

    _deliver(services)

    assert receiver.requests == []
    assert services.store.webhook_logs == {}
    webhook_jobs = [j for j in services.queue.jobs.values() if j.lane is Lane.WEBHOOK]
    assert [j.status for j in webhook_jobs] == [JobStatus.COMPLETED]
    assert webhook_jobs[0].result == {"status": "skipped", "reason": "no_webhook_url"}


def test_job_for_terminal_entry_does_not_send(services, receiver) -> None:
    _settle_payment(services)
    _deliver(services)
    entry = _only_entry(services)

    services.queue.enqueue(Lane.WEBHOOK, {"merchant_id": MERCHANT_ID, "webhook_id": entry.id})
    _deliver(services)

    assert len(receiver.requests) == 1
    assert _only_entry(services).attempts == 1


def test_manual_retry_starts_fresh_round(services, receiver, clock) -> None:
    receiver.statuses = [500]
    _settle_payment(services)
    for _ in range(5):
        _deliver(services)
        clock.advance(seconds=30)
    entry = _only_entry(services)
    assert entry.status is WebhookStatus.FAILED

    result = services.admission.retry_webhook(MERCHANT_ID, entry.id)
    assert result.body == {"id": entry.id, "status": "pending", "message": "Webhook retry scheduled"}
    assert _only_entry(services).attempts == 0

    receiver.statuses = [200]
    _deliver(services)

    entry = _only_entry(services)
    assert entry.status is WebhookStatus.SUCCESS
    assert entry.attempts == 1


def test_manual_retry_of_unknown_webhook(services) -> None:
    with pytest.raises(NotFoundError):
        services.admission.retry_webhook(MERCHANT_ID, "whk_missing")


def test_manual_retry_is_scoped_to_merchant(services) -> None:
    _settle_payment(services)
    _deliver(services)
    entry = _only_entry(services)

    with pytest.raises(NotFoundError):
        services.admission.retry_webhook("merchant_other", entry.id)


def test_logs_listing_pages_newest_first(services, clock) -> None:
    for index in range(3):
        request = PaymentCreateRequest(order_id=f"order_{index}", method="card", amount=1000)
        services.admission.create_payment(MERCHANT_ID, request)
        asyncio.run(consumer_for(services, services.payment_worker).drain())
        _deliver(services)
        clock.advance(seconds=1)

    page = services.admission.list_webhook_logs(MERCHANT_ID, limit=2, offset=0).body

    assert page["total"] == 3
    assert page["limit"] == 2
    assert len(page["data"]) == 2
    assert page["data"][0]["created_at"] > page["data"][1]["created_at"]
    assert page["data"][0]["event"] == "payment.success"
    assert services.admission.list_webhook_logs("merchant_other").body["total"] == 0


def test_signing_helpers() -> None:
    body = canonical_bytes({"b": 1, "a": "é"})

    assert body == '{"b":1,"a":"é"}'.encode("utf-8")
    signature = sign(body, "secret")
    assert len(signature) == 64
    assert verify(body, "secret", signature)
    assert not verify(body + b" ", "secret", signature)
    assert not verify(body, "other", signature)


def test_backoff_schedules() -> None:
    assert [PRODUCTION_SCHEDULE.delay_before(n).total_seconds() for n in range(1, 6)] == [0, 60, 300, 1800, 7200]
    assert [TEST_SCHEDULE.delay_before(n).total_seconds() for n in range(1, 6)] == [0, 5, 10, 15, 20]
    assert TEST_SCHEDULE.delay_before(9).total_seconds() == 20
    with pytest.raises(ValueError):
        TEST_SCHEDULE.delay_before(0)


def test_manual_retry_supersedes_pending_backoff_job(services, receiver, clock) -> None:
    receiver.statuses = [500]
    _settle_payment(services)
    _deliver(services)
    entry = _only_entry(services)
    assert entry.next_retry_at == clock.now + timedelta(seconds=5)

    clock.advance(seconds=1)
    services.admission.retry_webhook(MERCHANT_ID, entry.id)
    assert len(services.queue.pending(Lane.WEBHOOK)) == 2
    _deliver(services)
    entry = _only_entry(services)
    assert entry.attempts == 1
    assert entry.next_retry_at == clock.now + timedelta(seconds=5)

    # the original backoff job is due now, the new schedule is not
    clock.advance(seconds=4)
    _deliver(services)
    assert len(receiver.requests) == 2
    assert _only_entry(services).attempts == 1

    clock.advance(seconds=1)
    _deliver(services)
    assert len(receiver.requests) == 3
    assert _only_entry(services).attempts == 2
    assert len(services.queue.pending(Lane.WEBHOOK)) == 1


def test_attempt_in_flight_during_manual_retry_is_discarded(make_services, clock) -> None:
    sent: list[httpx.Request] = []
    wired = {}

    def endpoint(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        if len(sent) == 2:
            # manual retry lands while the second attempt is on the wire
            current = _only_entry(wired["services"])
            wired["services"].admission.retry_webhook(MERCHANT_ID, current.id)
        return httpx.Response(200 if len(sent) >= 3 else 500)

    services = make_services(handler=endpoint)
    wired["services"] = services
    _settle_payment(services)
    _deliver(services)
    clock.advance(seconds=5)

    _deliver(services)

    entry = _only_entry(services)
    assert len(sent) == 3
    assert entry.status is WebhookStatus.SUCCESS
    assert entry.attempts == 1
    results = [j.result.get("status") for j in services.queue.jobs.values() if j.lane is Lane.WEBHOOK]
    assert results.count("superseded") == 1
