"""
PatternCast — Global Exception Handlers

Provides consistent, structured error responses for the entire API.
Application errors, validation errors, HTTP exceptions and anything
unhandled all produce the same JSON envelope:

    {"error": true, "status_code": ..., "detail": ..., "request_id": ...}
"""

from __future__ import annotations

import math
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

import structlog

from patterncast.exceptions import PatternCastError, UpstreamUnavailableError

log = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 30


def _envelope(request: Request, status_code: int, detail, **extra) -> dict:
    return {
        "error": True,
        "status_code": status_code,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
        **extra,
    }


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(UpstreamUnavailableError)
    async def upstream_exception_handler(request: Request, exc: UpstreamUnavailableError):
        """Vision gateway unavailable → 503 with a retry hint."""
        retry_after = math.ceil(exc.retry_after) if exc.retry_after else DEFAULT_RETRY_AFTER_SECONDS
        log.warning(
            "upstream_unavailable",
            path=str(request.url.path),
            service=exc.service,
            reason=exc.reason,
            retry_after=retry_after,
        )
        return JSONResponse(
            status_code=exc.status_code,
            headers={"Retry-After": str(retry_after)},
            content=_envelope(
                request,
                exc.status_code,
                exc.message,
                retryable=True,
                reason=exc.reason,
            ),
        )

    @app.exception_handler(PatternCastError)
    async def app_exception_handler(request: Request, exc: PatternCastError):
        """Known application errors carry their own status code."""
        log.info(
            "app_error",
            path=str(request.url.path),
            error=type(exc).__name__,
            status=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_envelope(request, exc.status_code, exc.message),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=_envelope(request, exc.status_code, exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors → 422 with field details."""
        errors = [
            {
                "field": " → ".join(str(loc) for loc in err.get("loc", [])),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]

        log.warning(
            "validation_error",
            path=str(request.url.path),
            errors=errors,
        )

        return JSONResponse(
            status_code=422,
            content=_envelope(request, 422, "Validation error", errors=errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions → 500 with safe details."""
        log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
            traceback=traceback.format_exc(),
        )

        return JSONResponse(
            status_code=500,
            content=_envelope(request, 500, "Internal server error"),
        )
