"""
PatternCast — Request Logger Middleware

Structured request/response logging via structlog. Every request gets an
id (taken from an incoming ``X-Request-ID`` header when present) that is
bound into the structlog context, stored on ``request.state`` for the
error handlers, and echoed back in the response.
"""

from __future__ import annotations

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

log = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Paths to skip logging (high-frequency, low-signal)
_SKIP_PATHS = frozenset({"/health", "/favicon.ico"})


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status, and latency."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        if request.url.path in _SKIP_PATHS:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        start = time.perf_counter()
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        log.info(
            "request.start",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )

        try:
            response = await call_next(request)
        except Exception:
            log.error(
                "request.error",
                method=request.method,
                path=request.url.path,
                latency_ms=round((time.perf_counter() - start) * 1000, 1),
            )
            raise

        log.info(
            "request.complete",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=round((time.perf_counter() - start) * 1000, 1),
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
