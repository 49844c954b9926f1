from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence

from paygate.db.client import get_conn, transaction
from paygate.domain.enums import PaymentMethod
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

PAYMENT_COLUMNS = (
    "id, order_id, merchant_id, amount, currency, method, vpa, status, captured, "
    "error_code, error_description, created_at, updated_at"
)
REFUND_COLUMNS = "id, payment_id, merchant_id, amount, reason, status, created_at, processed_at"
WEBHOOK_COLUMNS = (
    "id, merchant_id, event, payload, status, attempts, created_at, last_attempt_at, "
    "next_retry_at, response_code, response_body"
)


class PgEntityStore(EntityStore):
    """PostgreSQL-backed entity store using raw psycopg2."""

    @contextmanager
    def advisory_lock(self, name: str) -> Iterator[None]:
        with transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (name,))
            yield

    @staticmethod
    def _hydrate_payment(row: Sequence[Any]) -> Payment:
        return Payment(
            id=str(row[0]),
            order_id=str(row[1]),
            merchant_id=str(row[2]),
            amount=int(row[3]),
            currency=str(row[4]),
            method=PaymentMethod(str(row[5])),
            vpa=row[6],
            status=PaymentStatus(str(row[7])),
            captured=bool(row[8]),
            error_code=row[9],
            error_description=row[10],
            created_at=row[11],
            updated_at=row[12],
        )

    @staticmethod
    def _hydrate_refund(row: Sequence[Any]) -> Refund:
        return Refund(
            id=str(row[0]),
            payment_id=str(row[1]),
            merchant_id=str(row[2]),
            amount=int(row[3]),
            reason=row[4],
            status=RefundStatus(str(row[5])),
            created_at=row[6],
            processed_at=row[7],
        )

    @staticmethod
    def _hydrate_webhook(row: Sequence[Any]) -> WebhookLogEntry:
        return WebhookLogEntry(
            id=str(row[0]),
            merchant_id=str(row[1]),
            event=str(row[2]),
            payload=str(row[3]),
            status=WebhookStatus(str(row[4])),
            attempts=int(row[5]),
            created_at=row[6],
            last_attempt_at=row[7],
            next_retry_at=row[8],
            response_code=int(row[9]) if row[9] is not None else None,
            response_body=row[10],
        )

    def insert_payment(self, payment: Payment) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO payments (
                        id, order_id, merchant_id, amount, currency, method, vpa,
                        status, captured, created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        payment.id,
                        payment.order_id,
                        payment.merchant_id,
                        payment.amount,
                        payment.currency,
                        payment.method.value,
                        payment.vpa,
                        payment.status.value,
                        payment.captured,
                        payment.created_at,
                        payment.updated_at or payment.created_at,
                    ),
                )

    def get_payment(self, payment_id: str, merchant_id: str | None = None) -> Optional[Payment]:
        query = f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE id = %s"
        params: tuple[Any, ...] = (payment_id,)
        if merchant_id is not None:
            query += " AND merchant_id = %s"
            params += (merchant_id,)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        return self._hydrate_payment(row) if row else None

    def transition_payment(
        self,
        payment_id: str,
        *,
        to_status: PaymentStatus,
        now: datetime,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> Optional[Payment]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE payments
                       SET status = %s,
                           error_code = %s,
                           error_description = %s,
                           updated_at = %s
                     WHERE id = %s AND status = 'pending'
                     RETURNING {PAYMENT_COLUMNS}
                    """,
                    (to_status.value, error_code, error_description, now, payment_id),
                )
                row = cur.fetchone()
        return self._hydrate_payment(row) if row else None

    def capture_payment(self, payment_id: str, *, now: datetime) -> Optional[Payment]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE payments
                       SET captured = TRUE, updated_at = %s
                     WHERE id = %s AND status = 'success'
                     RETURNING {PAYMENT_COLUMNS}
                    """,
                    (now, payment_id),
                )
                row = cur.fetchone()
        return self._hydrate_payment(row) if row else None

    def insert_refund(self, refund: Refund) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO refunds (id, payment_id, merchant_id, amount, reason, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        refund.id,
                        refund.payment_id,
                        refund.merchant_id,
                        refund.amount,
                        refund.reason,
                        refund.status.value,
                        refund.created_at,
                    ),
                )

    def get_refund(self, refund_id: str, merchant_id: str | None = None) -> Optional[Refund]:
        query = f"SELECT {REFUND_COLUMNS} FROM refunds WHERE id = %s"
        params: tuple[Any, ...] = (refund_id,)
        if merchant_id is not None:
            query += " AND merchant_id = %s"
            params += (merchant_id,)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        return self._hydrate_refund(row) if row else None

    def sum_active_refunds(self, payment_id: str) -> int:
        statuses = [s.value for s in RefundStatus.counted_against_payment()]
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COALESCE(SUM(amount), 0)
                      FROM refunds
                     WHERE payment_id = %s AND status = ANY(%s)
                    """,
                    (payment_id, statuses),
                )
                row = cur.fetchone()
        return int(row[0]) if row else 0

    def mark_refund_processed(self, refund_id: str, *, now: datetime) -> Optional[Refund]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE refunds
                       SET status = 'processed', processed_at = %s
                     WHERE id = %s AND status = 'pending'
                     RETURNING {REFUND_COLUMNS}
                    """,
                    (now, refund_id),
                )
                row = cur.fetchone()
        return self._hydrate_refund(row) if row else None

    def get_idempotency(self, merchant_id: str, key: str) -> Optional[IdempotencyRecord]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT key, merchant_id, response, request_hash, created_at, expires_at
                      FROM idempotency_keys
                     WHERE merchant_id = %s AND key = %s
                    """,
                    (merchant_id, key),
                )
                row = cur.fetchone()
        if not row:
            return None
        return IdempotencyRecord(
            key=str(row[0]),
            merchant_id=str(row[1]),
            response=str(row[2]),
            request_hash=row[3],
            created_at=row[4],
            expires_at=row[5],
        )

    def insert_idempotency(self, record: IdempotencyRecord, *, now: datetime) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                # Only an expired row may be overwritten
                cur.execute(
                    """
                    INSERT INTO idempotency_keys (key, merchant_id, response, request_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (merchant_id, key) DO UPDATE
                        SET response = EXCLUDED.response,
                            request_hash = EXCLUDED.request_hash,
                            created_at = EXCLUDED.created_at,
                            expires_at = EXCLUDED.expires_at
                      WHERE idempotency_keys.expires_at < %s
                    RETURNING key
                    """,
                    (
                        record.key,
                        record.merchant_id,
                        record.response,
                        record.request_hash,
                        record.created_at,
                        record.expires_at,
                        now,
                    ),
                )
                inserted = cur.fetchone()
        if inserted is None:
            raise IdempotencyConflictError(
                "Idempotency key already in use",
                context={"merchant_id": record.merchant_id, "key": record.key},
            )

    def delete_expired_idempotency(self, merchant_id: str, key: str, *, now: datetime) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM idempotency_keys WHERE merchant_id = %s AND key = %s AND expires_at < %s",
                    (merchant_id, key, now),
                )

    def insert_webhook_log(self, entry: WebhookLogEntry) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_logs (id, merchant_id, event, payload, status, attempts, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        entry.merchant_id,
                        entry.event,
                        entry.payload,
                        entry.status.value,
                        entry.attempts,
                        entry.created_at,
                    ),
                )

    def get_webhook_log(self, webhook_id: str, merchant_id: str | None = None) -> Optional[WebhookLogEntry]:
        query = f"SELECT {WEBHOOK_COLUMNS} FROM webhook_logs WHERE id = %s"
        params: tuple[Any, ...] = (webhook_id,)
        if merchant_id is not None:
            query += " AND merchant_id = %s"
            params += (merchant_id,)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        return self._hydrate_webhook(row) if row else None

    def update_webhook_log(self, entry: WebhookLogEntry) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE webhook_logs
                       SET status = %s,
                           attempts = %s,
                           last_attempt_at = %s,
                           next_retry_at = %s,
                           response_code = %s,
                           response_body = %s
                     WHERE id = %s
                    """,
                    (
                        entry.status.value,
                        entry.attempts,
                        entry.last_attempt_at,
                        entry.next_retry_at,
                        entry.response_code,
                        entry.response_body,
                        entry.id,
                    ),
                )

    def list_webhook_logs(
        self, merchant_id: str, *, limit: int, offset: int
    ) -> tuple[list[WebhookLogEntry], int]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {WEBHOOK_COLUMNS}
                      FROM webhook_logs
                     WHERE merchant_id = %s
                     ORDER BY created_at DESC
                     LIMIT %s OFFSET %s
                    """,
                    (merchant_id, limit, offset),
                )
                rows = cur.fetchall() or []
                cur.execute("SELECT COUNT(*) FROM webhook_logs WHERE merchant_id = %s", (merchant_id,))
                count_row = cur.fetchone()
        total = int(count_row[0]) if count_row else 0
        return [self._hydrate_webhook(row) for row in rows], total

    def reset_webhook_log(self, webhook_id: str) -> Optional[WebhookLogEntry]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE webhook_logs
                       SET attempts = 0, status = 'pending', next_retry_at = NULL
                     WHERE id = %s
                     RETURNING {WEBHOOK_COLUMNS}
                    """,
                    (webhook_id,),
                )
                row = cur.fetchone()
        return self._hydrate_webhook(row) if row else None

    def save_merchant(self, merchant: Merchant) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO merchants (id, name, api_key, api_secret, active)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                        SET name = EXCLUDED.name,
                            api_key = EXCLUDED.api_key,
                            api_secret = EXCLUDED.api_secret,
                            active = EXCLUDED.active
                    """,
                    (merchant.id, merchant.name, merchant.api_key, merchant.api_secret, merchant.active),
                )

    def get_merchant_by_api_key(self, api_key: str) -> Optional[Merchant]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, name, api_key, api_secret, active
                      FROM merchants
                     WHERE api_key = %s
                     LIMIT 1
                    """,
                    (api_key,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return Merchant(
            id=str(row[0]),
            name=str(row[1]),
            api_key=str(row[2]),
            api_secret=str(row[3]),
            active=bool(row[4]),
        )

    def save_webhook_config(self, config: MerchantWebhookConfig) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE merchants SET webhook_url = %s, webhook_secret = %s WHERE id = %s",
                    (config.webhook_url, config.webhook_secret, config.merchant_id),
                )

    def get_webhook_config(self, merchant_id: str) -> Optional[MerchantWebhookConfig]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, webhook_url, webhook_secret FROM merchants WHERE id = %s",
                    (merchant_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return MerchantWebhookConfig(
            merchant_id=str(row[0]),
            webhook_url=row[1] or None,
            webhook_secret=str(row[2] or ""),
        )
