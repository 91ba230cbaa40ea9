from __future__ import annotations

from typing import Any

from finledger.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _error_response("Forbidden", code="TENANT_SCOPE_MISSING", message="Tenant scope is required"),
    404: _error_response("Not found", code="NOT_FOUND", message="Resource not found"),
    422: _error_response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["query", "tenant_id"], "msg": "Field required"}]},
    ),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

WEBHOOK_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response(
        "Webhook verification failed",
        code="WEBHOOK_VERIFICATION_FAILED",
        message="Webhook signature could not be verified",
        details={"reason": "body_hash_mismatch"},
    ),
    500: DEFAULT_ERROR_RESPONSES[500],
}
