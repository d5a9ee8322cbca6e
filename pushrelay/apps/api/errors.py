from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from pushrelay.apps.api.response import error_envelope, is_versioned_request
from pushrelay.core.errors import (
    InvalidNotificationError,
    InvalidSubscriptionError,
    PushRelayError,
    SubscriptionConflictError,
    SubscriptionTargetError,
    VapidKeyNotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors surfaced by the push and notification routes, mapped to (status, code).
_DOMAIN_ERROR_STATUS: dict[type[PushRelayError], tuple[int, str]] = {
    InvalidSubscriptionError: (422, "INVALID_SUBSCRIPTION"),
    SubscriptionTargetError: (403, "INVALID_CLIENT_OR_DOMAIN"),
    VapidKeyNotFoundError: (404, "VAPID_KEY_NOT_FOUND"),
    SubscriptionConflictError: (409, "SUBSCRIPTION_CONFLICT"),
    InvalidNotificationError: (422, "INVALID_NOTIFICATION"),
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


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for the browser snippet and SDKs.
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_envelope(
        request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: PushRelayError) -> JSONResponse:
    status_code, code = 500, "INTERNAL_ERROR"
    for error_type, mapped in _DOMAIN_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code, code = mapped
            break
    if status_code == 500:
        logger.exception("unmapped_domain_error path=%s", request.url.path, exc_info=exc)
    payload = error_envelope(request, code=code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Storage outages are retryable for callers; keep driver messages out of the response.
    logger.error("database_error path=%s error=%s", request.url.path, exc.__class__.__name__, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Database unavailable"}, status_code=503)
    payload = error_envelope(request, code="DATABASE_UNAVAILABLE", message="Database unavailable, retry later")
    return JSONResponse(content=payload, status_code=503)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_envelope(request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def raise_not_found(message: str) -> None:
    raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": message})
