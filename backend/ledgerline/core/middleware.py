"""
FastAPI exception handlers and middleware.

Converts all AppError subclasses, request validation failures and
unexpected exceptions into consistent JSON responses. Injects request
IDs into every request.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ledgerline.config.logging_config import bind_log_context, clear_log_context
from ledgerline.core.canonical import new_request_id
from ledgerline.core.errors import AppError, ErrorCategory, ErrorCode

_log = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Injects a request ID into every request/response cycle.

    The ID is taken from the ``X-Request-ID`` request header if present;
    otherwise a new one is generated. The ID is bound to structlog context
    so that all log statements within the request automatically include it.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip()[:128] or new_request_id()
        clear_log_context()
        bind_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        response.headers[REQUEST_ID_HEADER] = request_id
        _log.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security-relevant HTTP response headers to every response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


# ── Exception handlers ────────────────────────────────────────────────── #


def _error_response(request: Request, status_code: int, error: dict[str, object]) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status_code,
        content={**error, "requestId": request_id},
        headers={REQUEST_ID_HEADER: request_id or ""},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Convert a domain AppError to a structured JSON response."""
    _log.warning(
        "application_error",
        error_code=exc.code.value,
        category=exc.category.value,
        message=exc.message,
        http_status=exc.http_status,
    )
    return _error_response(request, exc.http_status, exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation failures are client errors (400)."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return _error_response(
        request,
        400,
        {
            "error": {
                "code": ErrorCode.VALIDATION_ERROR.value,
                "category": ErrorCategory.CLIENT.value,
                "message": "Request validation failed",
                "detail": {"errors": errors},
            }
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    Never leaks internal detail to the client.
    """
    _log.exception("unhandled_exception", exc_info=exc)
    return _error_response(
        request,
        500,
        {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "category": ErrorCategory.TRANSIENT.value,
                "message": "An unexpected internal error occurred.",
                "detail": {},
            }
        },
    )
