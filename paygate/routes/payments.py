from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response

from paygate.bootstrap import Services
from paygate.domain.dtos import PaymentCreateRequest, RefundCreateRequest
from paygate.domain.models import Merchant
from paygate.utils.idempotency import get_idempotency_key
from paygate.utils.security import get_services, require_merchant

from paygate.routes.responses import render

router = APIRouter(prefix="/api/v1")


@router.post("/payments", status_code=201)
def create_payment(
    request: PaymentCreateRequest,
    merchant: Merchant = Depends(require_merchant),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.create_payment(merchant.id, request, idempotency_key))


@router.get("/payments/{payment_id}")
def get_payment(
    payment_id: str,
    merchant: Merchant = Depends(require_merchant),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.get_payment(merchant.id, payment_id))


@router.post("/payments/{payment_id}/capture")
def capture_payment(
    payment_id: str,
    merchant: Merchant = Depends(require_merchant),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.capture_payment(merchant.id, payment_id))


@router.post("/payments/{payment_id}/refunds", status_code=201)
def create_refund(
    payment_id: str,
    request: RefundCreateRequest,
    merchant: Merchant = Depends(require_merchant),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.create_refund(merchant.id, payment_id, request, idempotency_key))


@router.get("/refunds/{refund_id}")
def get_refund(
    refund_id: str,
    merchant: Merchant = Depends(require_merchant),
    services: Services = Depends(get_services),
) -> Response:
    return render(services.admission.get_refund(merchant.id, refund_id))
