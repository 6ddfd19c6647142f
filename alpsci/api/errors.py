"""Unified error handling — ServiceError + RequestValidationError → JSON."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from alpsci.engines.build_sync.github_client import GitHubAuthenticationError
from alpsci.services import (
    AuthenticationError,
    NotFoundError,
    ServiceError,
    TransportError,
    ValidationError,
)

log = structlog.get_logger(__name__)

_STATUS_MAP: dict[type[ServiceError], int] = {
    NotFoundError: 404,
    ValidationError: 422,
    AuthenticationError: 401,
    TransportError: 502,
}


async def _service_error_handler(_request: Request, exc: ServiceError) -> JSONResponse:
    if isinstance(exc, GitHubAuthenticationError):
        return JSONResponse(
            status_code=401,
            content={"detail": "GitHub credential invalid or expired"},
        )
    status = 500
    for cls in type(exc).__mro__:
        if cls in _STATUS_MAP:
            status = _STATUS_MAP[cls]
            break
    if status >= 500:
        log.error("api.upstream_error", error=str(exc), status_code=status)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    messages = []
    for err in errors:
        loc = " → ".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return JSONResponse(
        status_code=422,
        content={"detail": "; ".join(messages)},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    log.exception("api.unhandled_error", error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "internal server error"})


def register_error_handlers(app: FastAPI) -> None:
    """Register exception handlers on the app."""
    app.add_exception_handler(ServiceError, _service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)
