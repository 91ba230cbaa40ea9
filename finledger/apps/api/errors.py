from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from finledger.apps.api.response import error_response, is_versioned_request
from finledger.core.errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    TenantScopeMissingError,
    UpstreamError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=status_code, headers=headers)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette-raised errors (unknown routes, bad methods) share the envelope.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def webhook_verification_exception_handler(
    request: Request, exc: WebhookVerificationError
) -> JSONResponse:
    # Only the stable reason code leaves the process; headers and body never do.
    return _envelope(
        request,
        status_code=401,
        code="WEBHOOK_VERIFICATION_FAILED",
        message="Webhook signature could not be verified",
        details={"reason": exc.reason},
    )


async def connection_not_found_exception_handler(
    request: Request, exc: ConnectionNotFoundError
) -> JSONResponse:
    return _envelope(request, status_code=404, code="CONNECTION_NOT_FOUND", message=str(exc))


async def tenant_scope_exception_handler(
    request: Request, exc: TenantScopeMissingError
) -> JSONResponse:
    return _envelope(request, status_code=403, code="TENANT_SCOPE_MISSING", message=str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log carries the detail.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    # Fail closed; the message names the missing setting, never its value.
    logger.error("configuration_error path=%s error=%s", request.url.path, exc)
    return _envelope(request, status_code=503, code="CONFIGURATION_ERROR", message=str(exc))


async def upstream_exception_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    details = {"upstream_status": exc.status_code} if exc.status_code is not None else None
    return _envelope(request, status_code=502, code="UPSTREAM_ERROR", message=str(exc), details=details)
