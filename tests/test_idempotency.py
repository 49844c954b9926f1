from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import MERCHANT_ID
from paygate.domain.errors import IdempotencyConflictError
from paygate.services.idempotency import IdempotencyCache, request_fingerprint


def test_lookup_returns_stored_response(store, clock) -> None:
    cache = IdempotencyCache(store, clock=clock)
    cache.store(MERCHANT_ID, "key-1", '{"id":"pay_1"}', request_hash="abc")

    record = cache.lookup(MERCHANT_ID, "key-1")

    assert record is not None
    assert record.response == '{"id":"pay_1"}'
    assert record.request_hash == "abc"
    assert record.expires_at == clock.now + timedelta(hours=24)


def test_keys_are_scoped_per_merchant(store, clock) -> None:
    cache = IdempotencyCache(store, clock=clock)
    cache.store(MERCHANT_ID, "shared", "{}")

    assert cache.lookup("merchant_other", "shared") is None


def test_record_is_live_until_expiry_instant(store, clock) -> None:
    cache = IdempotencyCache(store, ttl=timedelta(hours=1), clock=clock)
    cache.store(MERCHANT_ID, "key-1", "{}")

    clock.advance(hours=1)
    assert cache.lookup(MERCHANT_ID, "key-1") is not None

    clock.advance(seconds=1)
    assert cache.lookup(MERCHANT_ID, "key-1") is None
    assert (MERCHANT_ID, "key-1") not in store.idempotency


def test_store_rejects_live_duplicate(store, clock) -> None:
    cache = IdempotencyCache(store, clock=clock)
    cache.store(MERCHANT_ID, "key-1", "{}")

    with pytest.raises(IdempotencyConflictError):
        cache.store(MERCHANT_ID, "key-1", '{"other":true}')


def test_store_replaces_expired_record(store, clock) -> None:
    cache = IdempotencyCache(store, ttl=timedelta(minutes=1), clock=clock)
    cache.store(MERCHANT_ID, "key-1", '{"first":true}')
    clock.advance(minutes=2)

    cache.store(MERCHANT_ID, "key-1", '{"second":true}')

    assert cache.lookup(MERCHANT_ID, "key-1").response == '{"second":true}'


def test_fingerprint_ignores_field_order() -> None:
    a = request_fingerprint("payment.create", {"order_id": "o1", "amount": 100})
    b = request_fingerprint("payment.create", {"amount": 100, "order_id": "o1"})
    c = request_fingerprint("refund.create", {"amount": 100, "order_id": "o1"})

    assert a == b
    assert a != c
