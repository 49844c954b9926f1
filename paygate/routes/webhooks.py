from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response

from paygate.bootstrap import Services
from paygate.domain.models import Merchant
from paygate.utils.security import get_services, require_merchant

from paygate.routes.responses import render

router = APIRouter(prefix="/api/v1")


@router.get("/webhooks")
def list_webhooks(
    limit: int = Query(default=10),
    offset: int = Query(default=0),
    merchant: Merchant = Depends(require_merchant),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.list_webhook_logs(merchant.id, limit=limit, offset=offset))


@router.post("/webhooks/{webhook_id}/retry")
def retry_webhook(
    webhook_id: str,
    merchant: Merchant = Depends(require_merchant),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.retry_webhook(merchant.id, webhook_id))


@router.get("/test/jobs/status")
def job_status(services: Services = Depends(get_services)) -> Response:
    """Queue counters across all lanes (no auth, sandbox tooling)."""
    return render(services.admission.job_status())
