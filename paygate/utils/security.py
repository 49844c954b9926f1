from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from paygate.bootstrap import Services
from paygate.domain.models import Merchant


def _unauthorized(description: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": {"code": "UNAUTHORIZED", "description": description}},
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_merchant(
    x_api_key: Optional[str] = Header(default=None),
    x_api_secret: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Merchant:
    """Resolve X-Api-Key / X-Api-Secret to an active merchant."""

    if not x_api_key or not x_api_secret:
        raise _unauthorized("Missing credentials")
    merchant = services.store.get_merchant_by_api_key(x_api_key.strip())
    if merchant is None or not merchant.active:
        raise _unauthorized("Invalid credentials")
    if not secrets.compare_digest(merchant.api_secret, x_api_secret.strip()):
        raise _unauthorized("Invalid credentials")
    return merchant
