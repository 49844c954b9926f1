from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import httpx

from paygate.config import Settings, settings as default_settings
from paygate.domain.models import Merchant, MerchantWebhookConfig
from paygate.processors.base import OutcomeDecider
from paygate.processors.factory import get_decider
from paygate.queue.base import JobQueue
from paygate.queue.consumer import LaneConsumer
from paygate.repositories.base import EntityStore
from paygate.services.admission import AdmissionService
from paygate.services.idempotency import IdempotencyCache
from paygate.utils.clock import Clock, utc_now
from paygate.webhooks.backoff import BackoffSchedule, select_schedule
from paygate.webhooks.delivery import WebhookDeliveryEngine
from paygate.workers.payment_worker import PaymentWorker
from paygate.workers.refund_worker import RefundWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Explicitly wired collaborators shared by the API and the workers."""

    settings: Settings
    store: EntityStore
    queue: JobQueue
    admission: AdmissionService
    payment_worker: PaymentWorker
    refund_worker: RefundWorker
    webhook_engine: WebhookDeliveryEngine

    def consumers(self) -> list[LaneConsumer]:
        cfg = self.settings
        common = {
            "poll_interval": cfg.queue_poll_interval_seconds,
            "claim_ttl": timedelta(seconds=cfg.job_claim_ttl_seconds),
        }
        return [
            LaneConsumer(
                self.queue,
                self.payment_worker.lane,
                self.payment_worker.handle,
                concurrency=cfg.payment_worker_concurrency,
                **common,
            ),
            LaneConsumer(
                self.queue,
                self.refund_worker.lane,
                self.refund_worker.handle,
                concurrency=cfg.refund_worker_concurrency,
                **common,
            ),
            LaneConsumer(
                self.queue,
                WebhookDeliveryEngine.lane,
                self.webhook_engine.handle,
                concurrency=cfg.webhook_worker_concurrency,
                **common,
            ),
        ]


def _default_backends(cfg: Settings, clock: Clock) -> tuple[EntityStore, JobQueue]:
    queue_policy = {
        "max_attempts": cfg.job_max_attempts,
        "retry_delay": timedelta(seconds=cfg.job_retry_delay_seconds),
    }
    if cfg.db_enabled:
        from paygate.db.client import init_pool
        from paygate.queue.pg_queue import PgJobQueue
        from paygate.repositories.pg_store import PgEntityStore

        init_pool(cfg)
        return PgEntityStore(), PgJobQueue(**queue_policy)

    from paygate.queue.memory_queue import InMemoryJobQueue
    from paygate.repositories.memory_store import InMemoryEntityStore

    logger.warning("database not configured, using in-memory store and queue")
    return InMemoryEntityStore(), InMemoryJobQueue(clock=clock, **queue_policy)


def seed_test_merchant(store: EntityStore, cfg: Settings) -> None:
    """Register the sandbox merchant and its webhook endpoint."""
    store.save_merchant(
        Merchant(
            id=cfg.test_merchant_id,
            name="Test Merchant",
            api_key=cfg.test_merchant_api_key,
            api_secret=cfg.test_merchant_api_secret,
        )
    )
    store.save_webhook_config(
        MerchantWebhookConfig(
            merchant_id=cfg.test_merchant_id,
            webhook_url=cfg.test_merchant_webhook_url or None,
            webhook_secret=cfg.test_merchant_webhook_secret,
        )
    )


def build_services(
    cfg: Settings = default_settings,
    *,
    store: EntityStore | None = None,
    queue: JobQueue | None = None,
    decider: OutcomeDecider | None = None,
    schedule: BackoffSchedule | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock = utc_now,
) -> Services:
    """Wire the service graph from configuration, honouring explicit overrides."""
    if store is None or queue is None:
        default_store, default_queue = _default_backends(cfg, clock)
        store = store or default_store
        queue = queue or default_queue
    if cfg.seed_test_merchant:
        seed_test_merchant(store, cfg)

    idempotency = IdempotencyCache(store, ttl=timedelta(hours=cfg.idempotency_ttl_hours), clock=clock)
    admission = AdmissionService(
        store,
        queue,
        idempotency,
        default_amount=cfg.default_payment_amount,
        default_currency=cfg.default_currency,
        clock=clock,
    )
    payment_worker = PaymentWorker(store, queue, decider or get_decider(cfg), clock=clock)
    refund_delay = (0.0, 0.0) if cfg.test_mode else (cfg.refund_delay_min_seconds, cfg.refund_delay_max_seconds)
    refund_worker = RefundWorker(store, queue, delay_range=refund_delay, clock=clock)
    webhook_engine = WebhookDeliveryEngine(
        store,
        queue,
        schedule or select_schedule(cfg),
        max_attempts=cfg.webhook_max_attempts,
        timeout=cfg.webhook_timeout_seconds,
        response_body_limit=cfg.webhook_response_body_limit,
        transport=transport,
        clock=clock,
    )
    return Services(
        settings=cfg,
        store=store,
        queue=queue,
        admission=admission,
        payment_worker=payment_worker,
        refund_worker=refund_worker,
        webhook_engine=webhook_engine,
    )
