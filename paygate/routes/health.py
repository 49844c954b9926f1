from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from paygate.bootstrap import Services
from paygate.domain.enums import Lane
from paygate.domain.errors import TransientInfraError
from paygate.utils.security import get_services

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_queue_metrics(services: Services) -> dict[str, Any]:
    metrics: dict[str, Any] = {"connected": False, "lanes": {}}
    try:
        for lane in Lane:
            metrics["lanes"][lane.value] = services.queue.counts(lane)
        metrics["connected"] = True
    except TransientInfraError as exc:
        logger.warning("health metrics collection failed", extra={"error": str(exc)})
    return metrics


@router.get("/health/metrics")
def health_metrics(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Detailed service health endpoint with job queue counters."""

    captured_at = datetime.now(timezone.utc)
    raw_metrics = _collect_queue_metrics(services)
    connected = bool(raw_metrics.pop("connected", False))
    cfg = services.settings

    return {
        "status": "ok" if connected else "degraded",
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": int((captured_at - SERVICE_STARTED_AT).total_seconds()),
        "service": {
            "environment": cfg.app_env,
            "test_mode": cfg.test_mode,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": cfg.db_enabled,
            "schema": cfg.db_schema if cfg.db_enabled else None,
        },
        "queues": raw_metrics["lanes"],
    }
