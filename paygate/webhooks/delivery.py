"""
Webhook delivery engine.

Each webhook-delivery job is one attempt against the merchant endpoint. The
first attempt for an event inserts a log entry holding the exact payload text;
retries are separate jobs that reference the entry by ``webhook_id`` and are
scheduled not-before the entry's ``next_retry_at``. A retry job records the
attempt count and due time it was scheduled for, and does nothing once the
entry has moved on (a manual retry or a later schedule). After ``max_attempts``
failed attempts the entry becomes ``failed`` and nothing retries it
automatically; ``schedule_manual_retry`` starts a fresh round.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from paygate.domain.enums import Lane
from paygate.domain.errors import NotFoundError, PermanentDataError
from paygate.domain.models import Job, MerchantWebhookConfig, WebhookLogEntry
from paygate.domain.statuses import WebhookStatus
from paygate.queue.base import JobQueue
from paygate.repositories.base import EntityStore
from paygate.utils.clock import Clock, utc_now
from paygate.utils.ids import WEBHOOK_PREFIX, new_id

from .backoff import BackoffSchedule
from .signing import EVENT_HEADER, SIGNATURE_HEADER, canonical_bytes, sign

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryAttempt:
    ok: bool
    response_code: int | None = None
    response_body: str | None = None


class WebhookDeliveryEngine:
    """Signs, sends and records webhook deliveries with bounded retries."""

    lane = Lane.WEBHOOK

    def __init__(
        self,
        store: EntityStore,
        queue: JobQueue,
        schedule: BackoffSchedule,
        *,
        max_attempts: int = 5,
        timeout: float = 5.0,
        response_body_limit: int = 2000,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.schedule = schedule
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.response_body_limit = response_body_limit
        self.transport = transport
        self.clock = clock

    async def handle(self, job: Job) -> dict[str, Any]:
        target = await asyncio.to_thread(self._load_target, job)
        if isinstance(target, dict):
            return target
        entry, config = target
        return await self.deliver(entry, config.webhook_url, config.webhook_secret)

    def _load_target(self, job: Job) -> tuple[WebhookLogEntry, MerchantWebhookConfig] | dict[str, Any]:
        merchant_id = job.payload.get("merchant_id")
        if not merchant_id:
            raise PermanentDataError("webhook job without merchant_id", context={"job_id": job.id})
        config = self.store.get_webhook_config(merchant_id)
        if config is None:
            raise PermanentDataError(f"Merchant {merchant_id} not found", context={"job_id": job.id})
        if not config.webhook_url:
            logger.info(
                "no webhook url configured, skipping delivery",
                extra={"merchant_id": merchant_id, "event": job.payload.get("event")},
            )
            return {"status": "skipped", "reason": "no_webhook_url"}

        webhook_id = job.payload.get("webhook_id")
        if not webhook_id:
            return self._open_entry(job, merchant_id), config
        entry = self.store.get_webhook_log(webhook_id, merchant_id)
        if entry is None:
            raise PermanentDataError(f"Webhook log {webhook_id} not found", context={"job_id": job.id})
        if entry.status is not WebhookStatus.PENDING or not self._is_current(job, entry):
            logger.info(
                "webhook job superseded, ignoring",
                extra={"webhook_id": entry.id, "status": entry.status, "attempts": entry.attempts},
            )
            return {"status": "noop", "webhook_id": entry.id}
        return entry, config

    @staticmethod
    def _is_current(job: Job, entry: WebhookLogEntry) -> bool:
        """True if ``job`` was scheduled for the entry's present retry slot.

        Each retry job records the attempt count and ``next_retry_at`` it was
        scheduled for; a manual retry or a newer schedule makes older jobs stale.
        """
        if "attempts" not in job.payload:
            return True
        if job.payload["attempts"] != entry.attempts:
            return False
        due = job.payload.get("due")
        expected = datetime.fromisoformat(due) if due else None
        return expected == entry.next_retry_at

    def _open_entry(self, job: Job, merchant_id: str) -> WebhookLogEntry:
        event = job.payload.get("event")
        payload = job.payload.get("payload")
        if not event or payload is None:
            raise PermanentDataError("webhook job without event payload", context={"job_id": job.id})
        entry = WebhookLogEntry(
            id=new_id(WEBHOOK_PREFIX),
            merchant_id=merchant_id,
            event=str(event),
            payload=canonical_bytes(payload).decode("utf-8"),
            created_at=self.clock(),
        )
        self.store.insert_webhook_log(entry)
        return entry

    async def deliver(self, entry: WebhookLogEntry, url: str, secret: str) -> dict[str, Any]:
        """Make one attempt for ``entry`` and record its outcome."""
        body = entry.payload.encode("utf-8")
        attempt = await self._post(url, body, sign(body, secret), entry.event)
        return await asyncio.to_thread(self._record, entry, attempt)

    def _record(self, sent: WebhookLogEntry, attempt: DeliveryAttempt) -> dict[str, Any]:
        now = self.clock()
        with self.store.advisory_lock(f"webhook:{sent.id}"):
            entry = self.store.get_webhook_log(sent.id)
            if entry is None or entry.status is not sent.status or entry.attempts != sent.attempts:
                # Reset or advanced while the request was in flight
                logger.warning(
                    "webhook entry changed during delivery, discarding attempt",
                    extra={"webhook_id": sent.id, "response_code": attempt.response_code},
                )
                return {"status": "superseded", "webhook_id": sent.id}

            entry.attempts += 1
            entry.last_attempt_at = now
            entry.response_code = attempt.response_code
            entry.response_body = attempt.response_body
            log_extra = {
                "webhook_id": entry.id,
                "merchant_id": entry.merchant_id,
                "event": entry.event,
                "attempts": entry.attempts,
                "response_code": attempt.response_code,
            }

            if attempt.ok:
                entry.status = WebhookStatus.SUCCESS
                entry.next_retry_at = None
                self.store.update_webhook_log(entry)
                logger.info("webhook delivered", extra=log_extra)
                return {"status": "success", "webhook_id": entry.id, "response_code": attempt.response_code}

            if entry.attempts < self.max_attempts:
                entry.status = WebhookStatus.PENDING
                entry.next_retry_at = now + self.schedule.delay_before(entry.attempts + 1)
                self.store.update_webhook_log(entry)
                self.queue.enqueue(
                    Lane.WEBHOOK,
                    {
                        "merchant_id": entry.merchant_id,
                        "webhook_id": entry.id,
                        "attempts": entry.attempts,
                        "due": entry.next_retry_at.isoformat(),
                    },
                    not_before=entry.next_retry_at,
                )
                logger.warning(
                    "webhook delivery failed, retry scheduled",
                    extra={**log_extra, "next_retry_at": entry.next_retry_at},
                )
                return {"status": "retry_scheduled", "webhook_id": entry.id, "attempts": entry.attempts}

            entry.status = WebhookStatus.FAILED
            entry.next_retry_at = None
            self.store.update_webhook_log(entry)
        logger.error("webhook delivery exhausted", extra=log_extra)
        return {"status": "failed", "webhook_id": entry.id, "attempts": entry.attempts}

    async def _post(self, url: str, body: bytes, signature: str, event: str) -> DeliveryAttempt:
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: event,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                resp = await client.post(url, content=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return DeliveryAttempt(ok=False, response_body=self._truncate(f"{type(exc).__name__}: {exc}"))
        return DeliveryAttempt(
            ok=resp.is_success,
            response_code=resp.status_code,
            response_body=self._truncate(resp.text),
        )

    def _truncate(self, text: str | None) -> str | None:
        if not text:
            return None
        return text[: self.response_body_limit]


def schedule_manual_retry(
    store: EntityStore, queue: JobQueue, merchant_id: str, webhook_id: str
) -> WebhookLogEntry:
    """Reset a webhook's attempts and queue it for immediate delivery."""
    if store.get_webhook_log(webhook_id, merchant_id) is None:
        raise NotFoundError("Webhook not found")
    with store.advisory_lock(f"webhook:{webhook_id}"):
        entry = store.reset_webhook_log(webhook_id)
        if entry is None:
            raise NotFoundError("Webhook not found")
        queue.enqueue(Lane.WEBHOOK, {"merchant_id": merchant_id, "webhook_id": webhook_id, "attempts": 0})
    logger.info(
        "manual webhook retry scheduled",
        extra={"webhook_id": webhook_id, "merchant_id": merchant_id},
    )
    return entry
