from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from paygate.domain.enums import Lane
from paygate.domain.models import Job
from paygate.domain.statuses import JobStatus


class JobQueue(ABC):
    """At-least-once, delayed-dispatch work queue partitioned into lanes.

    A claimed job is owned by one worker until it is completed, failed, or its
    claim expires; expired claims are handed out again. ``not_before`` is a
    lower bound on dispatch time, never an exact schedule.
    """

    def __init__(self, *, max_attempts: int = 3, retry_delay: timedelta = timedelta(seconds=5)):
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    @abstractmethod
    def enqueue(
        self,
        lane: Lane,
        payload: dict[str, Any],
        *,
        not_before: datetime | None = None,
        max_attempts: int | None = None,
    ) -> Job: ...

    @abstractmethod
    def claim(self, lane: Lane, worker_id: str, *, claim_ttl: timedelta) -> Job | None:
        """Exclusively claim the next due job on ``lane``, or ``None``."""

    @abstractmethod
    def complete(self, job: Job, result: dict[str, Any] | None = None) -> None: ...

    @abstractmethod
    def fail(self, job: Job, error: str, *, retryable: bool) -> JobStatus:
        """Release a claimed job after an error.

        Retryable failures are re-queued after ``retry_delay`` until the job has
        used ``max_attempts`` claims; the returned status tells which happened.
        """

    @abstractmethod
    def counts(self, lane: Lane) -> dict[str, int]:
        """Number of jobs per status on ``lane``."""
