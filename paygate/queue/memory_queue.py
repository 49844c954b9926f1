from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from paygate.domain.enums import Lane
from paygate.domain.models import Job
from paygate.domain.statuses import JobStatus
from paygate.utils.clock import Clock, utc_now
from paygate.utils.ids import JOB_PREFIX, new_id

from .base import JobQueue

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):
    """Process-local job queue with claim expiry, for tests and local runs."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        retry_delay: timedelta = timedelta(seconds=5),
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_delay=retry_delay)
        self.clock = clock
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._order: Dict[str, int] = {}
        self.jobs: Dict[str, Job] = {}

    def enqueue(
        self,
        lane: Lane,
        payload: dict[str, Any],
        *,
        not_before: datetime | None = None,
        max_attempts: int | None = None,
    ) -> Job:
        now = self.clock()
        job = Job(
            id=new_id(JOB_PREFIX),
            lane=lane,
            payload=dict(payload),
            not_before=not_before or now,
            max_attempts=max_attempts or self.max_attempts,
            created_at=now,
        )
        with self._lock:
            self.jobs[job.id] = job
            self._order[job.id] = next(self._seq)
        logger.info(
            "job enqueued",
            extra={"job_id": job.id, "lane": lane.value, "next_retry_at": job.not_before},
        )
        return replace(job)

    def claim(self, lane: Lane, worker_id: str, *, claim_ttl: timedelta) -> Optional[Job]:
        now = self.clock()
        with self._lock:
            candidates = []
            for job in self.jobs.values():
                if job.lane is not lane:
                    continue
                if job.status is JobStatus.QUEUED and job.not_before <= now:
                    candidates.append(job)
                elif job.status is JobStatus.ACTIVE and job.claim_expires_at and job.claim_expires_at < now:
                    if job.attempts >= job.max_attempts:
                        job.status = JobStatus.FAILED
                        job.last_error = "claim expired"
                        continue
                    candidates.append(job)
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.not_before, self._order[j.id]))
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.claimed_by = worker_id
            job.claim_expires_at = now + claim_ttl
            return replace(job, payload=dict(job.payload))

    def _owned(self, job: Job) -> Optional[Job]:
        current = self.jobs.get(job.id)
        if current is None or current.status is not JobStatus.ACTIVE or current.claimed_by != job.claimed_by:
            logger.warning(
                "stale claim ignored",
                extra={"job_id": job.id, "lane": job.lane.value, "worker_id": job.claimed_by},
            )
            return None
        return current

    def complete(self, job: Job, result: dict[str, Any] | None = None) -> None:
        with self._lock:
            current = self._owned(job)
            if current is None:
                return
            current.status = JobStatus.COMPLETED
            current.result = dict(result or {})
            current.claimed_by = None
            current.claim_expires_at = None

    def fail(self, job: Job, error: str, *, retryable: bool) -> JobStatus:
        with self._lock:
            current = self._owned(job)
            if current is None:
                return job.status
            current.last_error = error
            current.claimed_by = None
            current.claim_expires_at = None
            if retryable and current.attempts < current.max_attempts:
                current.status = JobStatus.QUEUED
                current.not_before = self.clock() + self.retry_delay
            else:
                current.status = JobStatus.FAILED
            return current.status

    def counts(self, lane: Lane) -> dict[str, int]:
        tally = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self.jobs.values():
                if job.lane is lane:
                    tally[job.status.value] += 1
        return tally

    def pending(self, lane: Lane) -> list[Job]:
        """Queued jobs on ``lane`` in dispatch order, regardless of ``not_before``."""
        with self._lock:
            jobs = [j for j in self.jobs.values() if j.lane is lane and j.status is JobStatus.QUEUED]
            jobs.sort(key=lambda j: (j.not_before, self._order[j.id]))
            return [replace(j, payload=dict(j.payload)) for j in jobs]
