from __future__ import annotations

import json
import logging
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass
from typing import Any, Callable

from paygate.domain.dtos import (
    JobQueueStatus,
    PaymentCreateRequest,
    PaymentResponse,
    RefundCreateRequest,
    RefundResponse,
    WebhookLogPage,
    WebhookLogSummary,
    WebhookRetryResponse,
)
from paygate.domain.enums import Lane, Outcome, PaymentMethod
from paygate.domain.errors import (
    ConflictError,
    IdempotencyConflictError,
    NotFoundError,
    RefundAmountExceededError,
    ValidationError,
)
from paygate.domain.models import Payment, Refund
from paygate.domain.statuses import JobStatus, PaymentStatus
from paygate.queue.base import JobQueue
from paygate.repositories.base import EntityStore
from paygate.utils.clock import Clock, utc_now
from paygate.utils.ids import PAYMENT_PREFIX, REFUND_PREFIX, new_id
from paygate.webhooks.delivery import schedule_manual_retry

from paygate.services.idempotency import IdempotencyCache, request_fingerprint

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class AdmissionResult:
    """Response text plus the HTTP-status class to render it with."""

    outcome: Outcome
    payload: str
    replayed: bool = False

    @property
    def body(self) -> dict[str, Any]:
        return json.loads(self.payload)


class AdmissionService:
    """API-facing entry point: the only producer into the payment and refund lanes."""

    def __init__(
        self,
        store: EntityStore,
        queue: JobQueue,
        idempotency: IdempotencyCache,
        *,
        default_amount: int = 50000,
        default_currency: str = "INR",
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.idempotency = idempotency
        self.default_amount = default_amount
        self.default_currency = default_currency
        self.clock = clock

    # Creation with idempotency

    def create_payment(
        self,
        merchant_id: str,
        request: PaymentCreateRequest,
        idempotency_key: str | None = None,
    ) -> AdmissionResult:
        method = self._validate_payment(request)
        amount = request.amount if request.amount is not None else self.default_amount
        currency = (request.currency or self.default_currency).upper()
        fingerprint = request_fingerprint("payment.create", request.model_dump())

        def admit() -> str:
            now = self.clock()
            payment = Payment(
                id=new_id(PAYMENT_PREFIX),
                order_id=str(request.order_id),
                merchant_id=merchant_id,
                amount=amount,
                currency=currency,
                method=method,
                vpa=request.vpa,
                created_at=now,
                updated_at=now,
            )
            self.store.insert_payment(payment)
            # Job carries only the id so the worker re-reads current state
            self.queue.enqueue(Lane.PAYMENT, {"payment_id": payment.id})
            logger.info(
                "payment created",
                extra={
                    "payment_id": payment.id,
                    "merchant_id": merchant_id,
                    "order_id": payment.order_id,
                    "amount": amount,
                    "currency": currency,
                    "method": method,
                    "idempotency_key": idempotency_key,
                },
            )
            return PaymentResponse.from_payment(payment).model_dump_json()

        return self._admit_once(merchant_id, idempotency_key, fingerprint, admit)

    def create_refund(
        self,
        merchant_id: str,
        payment_id: str,
        request: RefundCreateRequest,
        idempotency_key: str | None = None,
    ) -> AdmissionResult:
        amount = request.amount
        if amount is None or isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Refund amount must be a positive integer")
        fingerprint = request_fingerprint(
            "refund.create", {"payment_id": payment_id, **request.model_dump()}
        )

        def admit() -> str:
            with self.store.lock_payment(payment_id):
                payment = self.store.get_payment(payment_id, merchant_id)
                if payment is None:
                    raise NotFoundError("Payment not found")
                if payment.status is not PaymentStatus.SUCCESS:
                    raise ValidationError("Payment not refundable")
                already_refunded = self.store.sum_active_refunds(payment_id)
                if amount + already_refunded > payment.amount:
                    raise RefundAmountExceededError(
                        "Refund amount exceeds available amount",
                        context={"available": payment.amount - already_refunded},
                    )
                refund = Refund(
                    id=new_id(REFUND_PREFIX),
                    payment_id=payment_id,
                    merchant_id=merchant_id,
                    amount=amount,
                    reason=request.reason,
                    created_at=self.clock(),
                )
                self.store.insert_refund(refund)
                self.queue.enqueue(Lane.REFUND, {"refund_id": refund.id})
            logger.info(
                "refund created",
                extra={
                    "refund_id": refund.id,
                    "payment_id": payment_id,
                    "merchant_id": merchant_id,
                    "amount": amount,
                    "idempotency_key": idempotency_key,
                },
            )
            return RefundResponse.from_refund(refund).model_dump_json()

        return self._admit_once(merchant_id, idempotency_key, fingerprint, admit)

    def _admit_once(
        self,
        merchant_id: str,
        idempotency_key: str | None,
        fingerprint: str,
        admit: Callable[[], str],
    ) -> AdmissionResult:
        """Run ``admit`` unless the key already produced a response."""
        with self._key_scope(merchant_id, idempotency_key):
            if idempotency_key:
                cached = self.idempotency.lookup(merchant_id, idempotency_key)
                if cached is not None:
                    return self._replay(cached.response, cached.request_hash, fingerprint, idempotency_key)

            payload = admit()

            if idempotency_key:
                try:
                    self.idempotency.store(
                        merchant_id, idempotency_key, payload, request_hash=fingerprint
                    )
                except IdempotencyConflictError:
                    existing = self.idempotency.lookup(merchant_id, idempotency_key)
                    if existing is not None:
                        logger.warning(
                            "idempotency key stored concurrently, returning first response",
                            extra={"merchant_id": merchant_id, "idempotency_key": idempotency_key},
                        )
                        return AdmissionResult(Outcome.CREATED, existing.response, replayed=True)
                    raise
        return AdmissionResult(Outcome.CREATED, payload)

    def _key_scope(self, merchant_id: str, key: str | None) -> AbstractContextManager[None]:
        if not key:
            return nullcontext()
        return self.store.advisory_lock(f"idempotency:{merchant_id}:{key}")

    def _replay(
        self, response: str, stored_hash: str | None, fingerprint: str, key: str
    ) -> AdmissionResult:
        if stored_hash is not None and stored_hash != fingerprint:
            raise ConflictError(
                "Idempotency key reused with a different request",
                context={"idempotency_key": key},
            )
        logger.info("idempotency hit, returning cached response", extra={"idempotency_key": key})
        return AdmissionResult(Outcome.CREATED, response, replayed=True)

    def _validate_payment(self, request: PaymentCreateRequest) -> PaymentMethod:
        if not request.order_id or not request.method:
            raise ValidationError("order_id and method are required")
        try:
            method = PaymentMethod(request.method.lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported payment method: {request.method}") from exc
        if request.amount is not None and request.amount <= 0:
            raise ValidationError("Amount must be positive")
        return method

    # Reads and follow-up operations

    def get_payment(self, merchant_id: str, payment_id: str) -> AdmissionResult:
        payment = self.store.get_payment(payment_id, merchant_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return AdmissionResult(Outcome.OK, PaymentResponse.from_payment(payment).model_dump_json())

    def capture_payment(self, merchant_id: str, payment_id: str) -> AdmissionResult:
        with self.store.lock_payment(payment_id):
            payment = self.store.get_payment(payment_id, merchant_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status is not PaymentStatus.SUCCESS:
                raise ValidationError("Payment not in capturable state")
            captured = self.store.capture_payment(payment_id, now=self.clock())
            if captured is None:
                raise ValidationError("Payment not in capturable state")
        logger.info("payment captured", extra={"payment_id": payment_id, "merchant_id": merchant_id})
        return AdmissionResult(Outcome.OK, PaymentResponse.from_payment(captured).model_dump_json())

    def get_refund(self, merchant_id: str, refund_id: str) -> AdmissionResult:
        refund = self.store.get_refund(refund_id, merchant_id)
        if refund is None:
            raise NotFoundError("Refund not found")
        return AdmissionResult(Outcome.OK, RefundResponse.from_refund(refund).model_dump_json())

    def list_webhook_logs(self, merchant_id: str, *, limit: int = 10, offset: int = 0) -> AdmissionResult:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        entries, total = self.store.list_webhook_logs(merchant_id, limit=limit, offset=offset)
        page = WebhookLogPage(
            data=[WebhookLogSummary.from_entry(entry) for entry in entries],
            total=total,
            limit=limit,
            offset=offset,
        )
        return AdmissionResult(Outcome.OK, page.model_dump_json())

    def retry_webhook(self, merchant_id: str, webhook_id: str) -> AdmissionResult:
        entry = schedule_manual_retry(self.store, self.queue, merchant_id, webhook_id)
        body = WebhookRetryResponse(id=entry.id, status=entry.status)
        return AdmissionResult(Outcome.OK, body.model_dump_json())

    def job_status(self) -> AdmissionResult:
        totals = {status: 0 for status in JobStatus}
        for lane in Lane:
            for status_value, count in self.queue.counts(lane).items():
                totals[JobStatus(status_value)] += count
        body = JobQueueStatus(
            pending=totals[JobStatus.QUEUED],
            processing=totals[JobStatus.ACTIVE],
            completed=totals[JobStatus.COMPLETED],
            failed=totals[JobStatus.FAILED],
        )
        return AdmissionResult(Outcome.OK, body.model_dump_json())
