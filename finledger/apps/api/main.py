from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from finledger.apps.api.errors import (
    configuration_exception_handler,
    connection_not_found_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_scope_exception_handler,
    unhandled_exception_handler,
    upstream_exception_handler,
    validation_exception_handler,
    webhook_verification_exception_handler,
)
from finledger.apps.api.response import API_VERSION
from finledger.apps.api.routes.connections import router as connections_router
from finledger.apps.api.routes.events import router as events_router
from finledger.apps.api.routes.health import router as health_router
from finledger.apps.api.routes.receipts import router as receipts_router
from finledger.apps.api.routes.webhooks import router as webhooks_router
from finledger.core.config import get_settings
from finledger.core.errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    TenantScopeMissingError,
    UpstreamError,
    WebhookVerificationError,
)
from finledger.core.logging import configure_logging
from finledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="finledger API")
    if settings.webhook_verification_bypass and not settings.is_production:
        logger.warning("webhook_verification_bypass_enabled environment=%s", settings.environment)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code // 100}xx")
        logger.debug(
            "http_request path=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(WebhookVerificationError)
    async def _webhook_verification_exception_handler(request: Request, exc: WebhookVerificationError):
        return await webhook_verification_exception_handler(request, exc)

    @app.exception_handler(ConnectionNotFoundError)
    async def _connection_not_found_exception_handler(request: Request, exc: ConnectionNotFoundError):
        return await connection_not_found_exception_handler(request, exc)

    @app.exception_handler(TenantScopeMissingError)
    async def _tenant_scope_exception_handler(request: Request, exc: TenantScopeMissingError):
        return await tenant_scope_exception_handler(request, exc)

    @app.exception_handler(ConfigurationError)
    async def _configuration_exception_handler(request: Request, exc: ConfigurationError):
        return await configuration_exception_handler(request, exc)

    @app.exception_handler(UpstreamError)
    async def _upstream_exception_handler(request: Request, exc: UpstreamError):
        return await upstream_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Webhooks authenticate by provider signature, not by API token.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(connections_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(receipts_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
