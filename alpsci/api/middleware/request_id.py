"""Request ID middleware — binds an X-Request-ID to every request's log context."""

from __future__ import annotations

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

log = structlog.get_logger(__name__)


def _is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError):
        return False


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse a well-formed incoming X-Request-ID or mint one, and echo it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get("x-request-id", "")
        request_id = incoming if _is_valid_uuid(incoming) else str(uuid.uuid4())

        tokens = structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        start = time.perf_counter()
        try:
            response = await call_next(request)
            log.info(
                "request.completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            structlog.contextvars.reset_contextvars(**tokens)
