from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Mapping

from paygate.domain.models import IdempotencyRecord
from paygate.repositories.base import EntityStore
from paygate.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


def request_fingerprint(operation: str, fields: Mapping[str, Any]) -> str:
    """Stable hash of an operation and its request fields."""
    canonical = json.dumps({"op": operation, "fields": fields}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyCache:
    """Maps (merchant, idempotency key) to the response produced the first time.

    Expired records are evicted by the lookup that finds them; there is no
    background sweep.
    """

    def __init__(self, store: EntityStore, *, ttl: timedelta = DEFAULT_TTL, clock: Clock = utc_now):
        self.entity_store = store
        self.ttl = ttl
        self.clock = clock

    def lookup(self, merchant_id: str, key: str) -> IdempotencyRecord | None:
        record = self.entity_store.get_idempotency(merchant_id, key)
        if record is None:
            return None
        now = self.clock()
        if record.is_expired(now):
            self.entity_store.delete_expired_idempotency(merchant_id, key, now=now)
            logger.info(
                "idempotency key expired",
                extra={"merchant_id": merchant_id, "idempotency_key": key},
            )
            return None
        return record

    def store(
        self,
        merchant_id: str,
        key: str,
        response: str,
        *,
        request_hash: str | None = None,
        ttl: timedelta | None = None,
    ) -> IdempotencyRecord:
        """Insert a record; raises IdempotencyConflictError if a live one exists."""
        now = self.clock()
        record = IdempotencyRecord(
            key=key,
            merchant_id=merchant_id,
            response=response,
            request_hash=request_hash,
            created_at=now,
            expires_at=now + (ttl or self.ttl),
        )
        self.entity_store.insert_idempotency(record, now=now)
        return record
