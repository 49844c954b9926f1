from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime

from paygate.domain.models import (
    IdempotencyRecord,
    Merchant,
    MerchantWebhookConfig,
    Payment,
    Refund,
    WebhookLogEntry,
)
from paygate.domain.statuses import PaymentStatus


class EntityStore(ABC):
    """Durable source of truth for payments, refunds, idempotency and webhook logs.

    Reads return detached copies; callers persist changes through the explicit
    mutation methods. Conditional transitions return ``None`` when the row is
    no longer in the expected state.
    """

    @abstractmethod
    def advisory_lock(self, name: str) -> AbstractContextManager[None]:
        """Serialize callers on ``name`` for the duration of the block.

        Store and queue calls made inside the block share one transaction
        where the backend supports it.
        """

    def lock_payment(self, payment_id: str) -> AbstractContextManager[None]:
        return self.advisory_lock(f"payment:{payment_id}")

    # Payments
    @abstractmethod
    def insert_payment(self, payment: Payment) -> None: ...

    @abstractmethod
    def get_payment(self, payment_id: str, merchant_id: str | None = None) -> Payment | None: ...

    @abstractmethod
    def transition_payment(
        self,
        payment_id: str,
        *,
        to_status: PaymentStatus,
        now: datetime,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> Payment | None:
        """Move a pending payment to ``to_status``; ``None`` if it already left pending."""

    @abstractmethod
    def capture_payment(self, payment_id: str, *, now: datetime) -> Payment | None:
        """Set ``captured`` on a successful payment; ``None`` if not in success."""

    # Refunds
    @abstractmethod
    def insert_refund(self, refund: Refund) -> None: ...

    @abstractmethod
    def get_refund(self, refund_id: str, merchant_id: str | None = None) -> Refund | None: ...

    @abstractmethod
    def sum_active_refunds(self, payment_id: str) -> int:
        """Total amount of pending and processed refunds against a payment."""

    @abstractmethod
    def mark_refund_processed(self, refund_id: str, *, now: datetime) -> Refund | None:
        """Move a pending refund to processed; ``None`` if it already left pending."""

    # Idempotency
    @abstractmethod
    def get_idempotency(self, merchant_id: str, key: str) -> IdempotencyRecord | None: ...

    @abstractmethod
    def insert_idempotency(self, record: IdempotencyRecord, *, now: datetime) -> None:
        """Insert, replacing an expired record; raise IdempotencyConflictError if one is live."""

    @abstractmethod
    def delete_expired_idempotency(self, merchant_id: str, key: str, *, now: datetime) -> None: ...

    # Webhook logs
    @abstractmethod
    def insert_webhook_log(self, entry: WebhookLogEntry) -> None: ...

    @abstractmethod
    def get_webhook_log(self, webhook_id: str, merchant_id: str | None = None) -> WebhookLogEntry | None: ...

    @abstractmethod
    def update_webhook_log(self, entry: WebhookLogEntry) -> None: ...

    @abstractmethod
    def list_webhook_logs(
        self, merchant_id: str, *, limit: int, offset: int
    ) -> tuple[list[WebhookLogEntry], int]:
        """Newest-first page of a merchant's webhook logs plus the total count."""

    @abstractmethod
    def reset_webhook_log(self, webhook_id: str) -> WebhookLogEntry | None:
        """Zero attempts and mark pending for a manual retry."""

    # Merchants
    @abstractmethod
    def save_merchant(self, merchant: Merchant) -> None: ...

    @abstractmethod
    def get_merchant_by_api_key(self, api_key: str) -> Merchant | None: ...

    @abstractmethod
    def save_webhook_config(self, config: MerchantWebhookConfig) -> None: ...

    @abstractmethod
    def get_webhook_config(self, merchant_id: str) -> MerchantWebhookConfig | None: ...
