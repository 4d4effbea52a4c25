# ─────────────────────────────────────────────────────────────────────────────
# Request Context Middleware: request id + timing on every HTTP request
# ─────────────────────────────────────────────────────────────────────────────
# Binds request_id into structlog contextvars so every log line emitted while
# handling the request carries it, then echoes it back as X-Request-ID.
# An incoming X-Request-ID (from the gateway) is reused.
# ─────────────────────────────────────────────────────────────────────────────

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

_QUIET_PATHS: frozenset[str] = frozenset({"/health", "/health/ready"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 1)
            structlog.contextvars.unbind_contextvars("request_id")

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "request_completed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=duration_ms,
            )
        response.headers["X-Request-ID"] = request_id
        return response
