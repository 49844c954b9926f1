from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Tuple

from paygate.domain.errors import IdempotencyConflictError
from paygate.domain.models import (
    IdempotencyRecord,
    Merchant,
    MerchantWebhookConfig,
    Payment,
    Refund,
    WebhookLogEntry,
)
from paygate.domain.statuses import PaymentStatus, RefundStatus, WebhookStatus

from .base import EntityStore

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryEntityStore(EntityStore):
    """Thread-safe in-memory store for local runs and tests.

    Advisory locks are process-local re-entrant locks; there is no rollback.
    """

    def __init__(self) -> None:
        self._mutex = threading.RLock()
        self._named_locks: Dict[str, threading.RLock] = {}
        self.payments: Dict[str, Payment] = {}
        self.refunds: Dict[str, Refund] = {}
        self.idempotency: Dict[Tuple[str, str], IdempotencyRecord] = {}
        self.webhook_logs: Dict[str, WebhookLogEntry] = {}
        self.merchants: Dict[str, Merchant] = {}
        self.webhook_configs: Dict[str, MerchantWebhookConfig] = {}

    @contextmanager
    def advisory_lock(self, name: str) -> Iterator[None]:
        with self._mutex:
            lock = self._named_locks.setdefault(name, threading.RLock())
        with lock:
            yield

    def insert_payment(self, payment: Payment) -> None:
        with self._mutex:
            if payment.id in self.payments:
                raise ValueError(f"duplicate payment id {payment.id}")
            self.payments[payment.id] = replace(payment)

    def get_payment(self, payment_id: str, merchant_id: str | None = None) -> Optional[Payment]:
        with self._mutex:
            payment = self.payments.get(payment_id)
            if payment is None or (merchant_id is not None and payment.merchant_id != merchant_id):
                return None
            return replace(payment)

    def transition_payment(
        self,
        payment_id: str,
        *,
        to_status: PaymentStatus,
        now: datetime,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> Optional[Payment]:
        with self._mutex:
            payment = self.payments.get(payment_id)
            if payment is None or payment.status is not PaymentStatus.PENDING:
                return None
            payment.status = to_status
            payment.error_code = error_code
            payment.error_description = error_description
            payment.updated_at = now
            return replace(payment)

    def capture_payment(self, payment_id: str, *, now: datetime) -> Optional[Payment]:
        with self._mutex:
            payment = self.payments.get(payment_id)
            if payment is None or payment.status is not PaymentStatus.SUCCESS:
                return None
            payment.captured = True
            payment.updated_at = now
            return replace(payment)

    def insert_refund(self, refund: Refund) -> None:
        with self._mutex:
            if refund.id in self.refunds:
                raise ValueError(f"duplicate refund id {refund.id}")
            self.refunds[refund.id] = replace(refund)

    def get_refund(self, refund_id: str, merchant_id: str | None = None) -> Optional[Refund]:
        with self._mutex:
            refund = self.refunds.get(refund_id)
            if refund is None or (merchant_id is not None and refund.merchant_id != merchant_id):
                return None
            return replace(refund)

    def sum_active_refunds(self, payment_id: str) -> int:
        counted = RefundStatus.counted_against_payment()
        with self._mutex:
            return sum(
                r.amount
                for r in self.refunds.values()
                if r.payment_id == payment_id and r.status in counted
            )

    def mark_refund_processed(self, refund_id: str, *, now: datetime) -> Optional[Refund]:
        with self._mutex:
            refund = self.refunds.get(refund_id)
            if refund is None or refund.status is not RefundStatus.PENDING:
                return None
            refund.status = RefundStatus.PROCESSED
            refund.processed_at = now
            return replace(refund)

    def get_idempotency(self, merchant_id: str, key: str) -> Optional[IdempotencyRecord]:
        with self._mutex:
            record = self.idempotency.get((merchant_id, key))
            return replace(record) if record else None

    def insert_idempotency(self, record: IdempotencyRecord, *, now: datetime) -> None:
        with self._mutex:
            existing = self.idempotency.get((record.merchant_id, record.key))
            if existing is not None and not existing.is_expired(now):
                raise IdempotencyConflictError(
                    "Idempotency key already in use",
                    context={"merchant_id": record.merchant_id, "key": record.key},
                )
            self.idempotency[(record.merchant_id, record.key)] = replace(record)

    def delete_expired_idempotency(self, merchant_id: str, key: str, *, now: datetime) -> None:
        with self._mutex:
            existing = self.idempotency.get((merchant_id, key))
            if existing is not None and existing.is_expired(now):
                del self.idempotency[(merchant_id, key)]

    def insert_webhook_log(self, entry: WebhookLogEntry) -> None:
        with self._mutex:
            self.webhook_logs[entry.id] = replace(entry)

    def get_webhook_log(self, webhook_id: str, merchant_id: str | None = None) -> Optional[WebhookLogEntry]:
        with self._mutex:
            entry = self.webhook_logs.get(webhook_id)
            if entry is None or (merchant_id is not None and entry.merchant_id != merchant_id):
                return None
            return replace(entry)

    def update_webhook_log(self, entry: WebhookLogEntry) -> None:
        with self._mutex:
            if entry.id not in self.webhook_logs:
                raise KeyError(entry.id)
            self.webhook_logs[entry.id] = replace(entry)

    def list_webhook_logs(
        self, merchant_id: str, *, limit: int, offset: int
    ) -> tuple[list[WebhookLogEntry], int]:
        with self._mutex:
            entries = [e for e in self.webhook_logs.values() if e.merchant_id == merchant_id]
        entries.sort(key=lambda e: e.created_at or _EPOCH, reverse=True)
        page = [replace(e) for e in entries[offset : offset + limit]]
        return page, len(entries)

    def reset_webhook_log(self, webhook_id: str) -> Optional[WebhookLogEntry]:
        with self._mutex:
            entry = self.webhook_logs.get(webhook_id)
            if entry is None:
                return None
            entry.attempts = 0
            entry.status = WebhookStatus.PENDING
            entry.next_retry_at = None
            return replace(entry)

    def save_merchant(self, merchant: Merchant) -> None:
        with self._mutex:
            self.merchants[merchant.id] = replace(merchant)

    def get_merchant_by_api_key(self, api_key: str) -> Optional[Merchant]:
        with self._mutex:
            for merchant in self.merchants.values():
                if merchant.api_key == api_key:
                    return replace(merchant)
        return None

    def save_webhook_config(self, config: MerchantWebhookConfig) -> None:
        with self._mutex:
            self.webhook_configs[config.merchant_id] = replace(config)

    def get_webhook_config(self, merchant_id: str) -> Optional[MerchantWebhookConfig]:
        with self._mutex:
            config = self.webhook_configs.get(merchant_id)
            return replace(config) if config else None
