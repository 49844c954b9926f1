from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from psycopg2.extras import Json

from paygate.db.client import get_conn
from paygate.domain.enums import Lane
from paygate.domain.models import Job
from paygate.domain.statuses import JobStatus
from paygate.utils.ids import JOB_PREFIX, new_id

from .base import JobQueue

logger = logging.getLogger(__name__)

JOB_COLUMNS = (
    "id, lane, payload, status, not_before, attempts, max_attempts, claimed_by, "
    "claim_expires_at, last_error, created_at"
)


class PgJobQueue(JobQueue):
    """Job queue on a PostgreSQL table, claimed with ``FOR UPDATE SKIP LOCKED``.

    Enqueues made inside an open store transaction commit with it.
    """

    @staticmethod
    def _hydrate(row: Sequence[Any]) -> Job:
        return Job(
            id=str(row[0]),
            lane=Lane(str(row[1])),
            payload=dict(row[2] or {}),
            status=JobStatus(str(row[3])),
            not_before=row[4],
            attempts=int(row[5]),
            max_attempts=int(row[6]),
            claimed_by=row[7],
            claim_expires_at=row[8],
            last_error=row[9],
            created_at=row[10],
        )

    def enqueue(
        self,
        lane: Lane,
        payload: dict[str, Any],
        *,
        not_before: datetime | None = None,
        max_attempts: int | None = None,
    ) -> Job:
        job_id = new_id(JOB_PREFIX)
        scheduled = not_before or datetime.now(timezone.utc)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO jobs (id, lane, payload, status, not_before, max_attempts)
                    VALUES (%s, %s, %s, 'queued', %s, %s)
                    RETURNING {JOB_COLUMNS}
                    """,
                    (job_id, lane.value, Json(payload), scheduled, max_attempts or self.max_attempts),
                )
                row = cur.fetchone()
        logger.info(
            "job enqueued",
            extra={"job_id": job_id, "lane": lane.value, "next_retry_at": scheduled},
        )
        return self._hydrate(row)

    def claim(self, lane: Lane, worker_id: str, *, claim_ttl: timedelta) -> Optional[Job]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE jobs
                       SET status = 'failed', last_error = 'claim expired', updated_at = NOW()
                     WHERE lane = %s AND status = 'active'
                       AND claim_expires_at < NOW() AND attempts >= max_attempts
                    """,
                    (lane.value,),
                )
                cur.execute(
                    f"""
                    UPDATE jobs
                       SET status = 'active',
                           attempts = attempts + 1,
                           claimed_by = %s,
                           claim_expires_at = NOW() + %s,
                           updated_at = NOW()
                     WHERE id = (
                            SELECT id FROM jobs
                             WHERE lane = %s
                               AND ((status = 'queued' AND not_before <= NOW())
                                    OR (status = 'active' AND claim_expires_at < NOW()))
                             ORDER BY not_before, created_at
                             LIMIT 1
                             FOR UPDATE SKIP LOCKED
                           )
                    RETURNING {JOB_COLUMNS}
                    """,
                    (worker_id, claim_ttl, lane.value),
                )
                row = cur.fetchone()
        return self._hydrate(row) if row else None

    def complete(self, job: Job, result: dict[str, Any] | None = None) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE jobs
                       SET status = 'completed', result = %s, claimed_by = NULL,
                           claim_expires_at = NULL, updated_at = NOW()
                     WHERE id = %s AND status = 'active' AND claimed_by = %s
                    """,
                    (Json(result or {}), job.id, job.claimed_by),
                )
                if cur.rowcount == 0:
                    logger.warning(
                        "stale claim ignored",
                        extra={"job_id": job.id, "lane": job.lane.value, "worker_id": job.claimed_by},
                    )

    def fail(self, job: Job, error: str, *, retryable: bool) -> JobStatus:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE jobs
                       SET status = CASE WHEN %s AND attempts < max_attempts THEN 'queued' ELSE 'failed' END,
                           not_before = CASE WHEN %s AND attempts < max_attempts THEN NOW() + %s ELSE not_before END,
                           last_error = %s,
                           claimed_by = NULL,
                           claim_expires_at = NULL,
                           updated_at = NOW()
                     WHERE id = %s AND status = 'active' AND claimed_by = %s
                    RETURNING status
                    """,
                    (retryable, retryable, self.retry_delay, error, job.id, job.claimed_by),
                )
                row = cur.fetchone()
        if not row:
            logger.warning(
                "stale claim ignored",
                extra={"job_id": job.id, "lane": job.lane.value, "worker_id": job.claimed_by},
            )
            return job.status
        return JobStatus(str(row[0]))

    def counts(self, lane: Lane) -> dict[str, int]:
        tally = {status.value: 0 for status in JobStatus}
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status, COUNT(*) FROM jobs WHERE lane = %s GROUP BY status", (lane.value,))
                for status_value, count in cur.fetchall() or []:
                    tally[str(status_value)] = int(count)
        return tally
