from __future__ import annotations

import pathlib
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from paygate.bootstrap import Services, build_services
from paygate.config import Settings
from paygate.processors.simulated import FixedOutcomeDecider
from paygate.queue.consumer import LaneConsumer
from paygate.queue.memory_queue import InMemoryJobQueue
from paygate.repositories.memory_store import InMemoryEntityStore
from paygate.webhooks.backoff import TEST_SCHEDULE

MERCHANT_ID = "merchant_test_123"
API_KEY = "key_test_abc123"
API_SECRET = "secret_test_xyz789"
WEBHOOK_URL = "https://merchant.example/hooks"
WEBHOOK_SECRET = "whsec_test_abc123"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Receiver:
    """Records webhook requests and answers with scripted status codes."""

    def __init__(self, statuses: list[int] | None = None) -> None:
        self.statuses = list(statuses or [200])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(code, text="ok" if code < 400 else "boom")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def queue(clock: FakeClock) -> InMemoryJobQueue:
    return InMemoryJobQueue(clock=clock, retry_delay=timedelta(seconds=5))


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        test_mode=True,
        test_processing_delay_ms=0,
        webhook_retry_intervals_test=True,
        test_merchant_webhook_url=WEBHOOK_URL,
        test_merchant_webhook_secret=WEBHOOK_SECRET,
        db_host="",
    )


@pytest.fixture
def make_services(
    test_settings: Settings,
    store: InMemoryEntityStore,
    queue: InMemoryJobQueue,
    receiver: Receiver,
    clock: FakeClock,
) -> Callable[..., Services]:
    def factory(success: bool = True, handler: Callable[[httpx.Request], httpx.Response] | None = None) -> Services:
        return build_services(
            test_settings,
            store=store,
            queue=queue,
            decider=FixedOutcomeDecider(success=success),
            schedule=TEST_SCHEDULE,
            transport=httpx.MockTransport(handler or receiver),
            clock=clock,
        )

    return factory


@pytest.fixture
def services(make_services: Callable[..., Services]) -> Services:
    return make_services()


def consumer_for(services: Services, lane_owner) -> LaneConsumer:
    """A single-slot consumer for the worker or engine ``lane_owner``."""
    return LaneConsumer(services.queue, lane_owner.lane, lane_owner.handle, poll_interval=0.01)
