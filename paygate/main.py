from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from paygate.bootstrap import Services, build_services
from paygate.config import settings
from paygate.domain.errors import GatewayError
from paygate.logging import setup_logging
from paygate.routes import health, payments, webhooks

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None, *, embedded_workers: bool = False) -> FastAPI:
    """Build the API. With ``embedded_workers`` the lane consumers run in-process."""

    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if not embedded_workers:
            yield
            return
        consumers = services.consumers()
        tasks = [asyncio.create_task(consumer.run()) for consumer in consumers]
        try:
            yield
        finally:
            for consumer in consumers:
                consumer.stop()
            await asyncio.gather(*tasks)

    app = FastAPI(title="Paygate API", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(health.router)
    app.include_router(payments.router)
    app.include_router(webhooks.router)

    @app.exception_handler(GatewayError)
    async def gateway_error(_: Request, exc: GatewayError) -> JSONResponse:
        if exc.outcome.http_status >= 500:
            logger.error("request failed", extra={"error": str(exc)})
        return JSONResponse(exc.to_dict(), status_code=exc.outcome.http_status)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            body = exc.detail
        else:
            body = {"error": {"code": "HTTP_ERROR", "description": str(exc.detail)}}
        return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    return app


setup_logging(settings.log_level)
app = create_app(embedded_workers=not settings.db_enabled)
