"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert calsync exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": {...}}}``
JSON responses.  The ``code`` of a taxonomy error is its kind.

Status code mapping:
- ``NotConnected`` → 409 Conflict
- ``ReauthRequired`` → 401 Unauthorized
- ``ProviderUnavailable`` → 503 Service Unavailable
- ``NotFound`` → 404 Not Found
- ``ValidationError`` → 422 Unprocessable Entity
- ``RateLimitExceededError`` → 429 Too Many Requests (with rate-limit headers)
- ``HTTPException`` → its own status, wrapped in the envelope
- ``RequestValidationError`` → 422 with code ``ValidationError``
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.deps import RateLimitExceededError
from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import CalendarSyncError, ErrorKind

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.not_connected: 409,
    ErrorKind.reauth_required: 401,
    ErrorKind.provider_unavailable: 503,
    ErrorKind.not_found: 404,
    ErrorKind.validation_error: 422,
}


async def _handle_calendar_sync_error(
    request: Request,
    exc: CalendarSyncError,
) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.kind.value, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", exc.kind.value, request.method, request.url.path, exc)

    details: dict[str, str] = {}
    if exc.provider:
        details["provider"] = exc.provider
    if exc.detail:
        details["detail"] = exc.detail
    body = ErrorResponse(
        error=ErrorDetail(
            code=exc.kind.value,
            message=exc.message,
            details=details or None,
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_rate_limited(
    request: Request,
    exc: RateLimitExceededError,
) -> JSONResponse:
    """Return 429 with Retry-After and X-RateLimit-* headers."""
    logger.info("Rate limit exceeded on %s for key=%r", request.url.path, exc.key)
    body = ErrorResponse(
        error=ErrorDetail(
            code="RateLimited",
            message="Too many sync requests; retry later",
            details={"retry_after_seconds": exc.decision.retry_after_seconds(exc.now)},
        )
    )
    return JSONResponse(
        status_code=429,
        content=body.model_dump(),
        headers=exc.decision.headers(exc.now),
    )


_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHENTICATED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


async def _handle_http_exception(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            message=str(exc.detail),
        )
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(),
        headers=getattr(exc, "headers", None),
    )


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 422 for malformed query parameters or request bodies."""
    body = ErrorResponse(
        error=ErrorDetail(
            code=ErrorKind.validation_error.value,
            message="Request validation failed",
            details={"errors": jsonable_encoder(exc.errors())},
        )
    )
    return JSONResponse(status_code=422, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that anything not
    covered by ``add_exception_handler`` still gets the standard envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    handlers = (
        (CalendarSyncError, _handle_calendar_sync_error),
        (RateLimitExceededError, _handle_rate_limited),
        (StarletteHTTPException, _handle_http_exception),
        (RequestValidationError, _handle_request_validation),
    )
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
