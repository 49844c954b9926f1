from __future__ import annotations

import asyncio
import logging
import os
import socket
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from paygate.domain.enums import Lane
from paygate.domain.errors import GatewayError
from paygate.domain.models import Job
from paygate.domain.statuses import JobStatus

from .base import JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Optional[dict[str, Any]]]]


class LaneConsumer:
    """Runs ``concurrency`` claim-process loops against one lane.

    Handler errors are routed to the queue: ``GatewayError`` subclasses decide
    retryability themselves, anything else is retried under the job's attempt
    budget. ``stop()`` stops new claims; in-flight jobs run to completion.
    """

    def __init__(
        self,
        queue: JobQueue,
        lane: Lane,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        claim_ttl: timedelta = timedelta(minutes=5),
        name: str | None = None,
    ) -> None:
        self.queue = queue
        self.lane = lane
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.claim_ttl = claim_ttl
        self.name = name or f"{socket.gethostname()}:{os.getpid()}:{lane.value}"
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def run(self) -> None:
        logger.info("lane consumer started", extra={"lane": self.lane.value, "worker_id": self.name})
        await asyncio.gather(*(self._slot(index) for index in range(self.concurrency)))
        logger.info("lane consumer stopped", extra={"lane": self.lane.value, "worker_id": self.name})

    async def _slot(self, index: int) -> None:
        worker_id = f"{self.name}#{index}"
        while not self._stopping.is_set():
            processed = await self.run_once(worker_id)
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self, worker_id: str | None = None) -> bool:
        """Claim and process at most one due job; ``True`` if one was processed."""
        job = await asyncio.to_thread(
            self.queue.claim, self.lane, worker_id or f"{self.name}#0", claim_ttl=self.claim_ttl
        )
        if job is None:
            return False
        await self._process(job)
        return True

    async def drain(self, limit: int = 1000) -> int:
        """Process due jobs until none is left; returns how many ran."""
        processed = 0
        while processed < limit and await self.run_once():
            processed += 1
        return processed

    async def _process(self, job: Job) -> None:
        log_extra = {"job_id": job.id, "lane": self.lane.value, "attempts": job.attempts}
        try:
            result = await self.handler(job)
        except GatewayError as exc:
            status = await asyncio.to_thread(self.queue.fail, job, str(exc), retryable=exc.retryable)
            level = logging.WARNING if status is JobStatus.QUEUED else logging.ERROR
            logger.log(level, "job failed", extra={**log_extra, "status": status, "error": str(exc)})
        except Exception as exc:  # noqa: BLE001
            status = await asyncio.to_thread(self.queue.fail, job, str(exc), retryable=True)
            logger.exception("job crashed", extra={**log_extra, "status": status, "error": str(exc)})
        else:
            await asyncio.to_thread(self.queue.complete, job, result or {})
            logger.info("job completed", extra={**log_extra, "status": (result or {}).get("status")})
