"""alpsci REST API — FastAPI application factory."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from alpsci.api.deps import (
    dispose_engine,
    get_client_factory,
    get_sync_runner,
    init_session_factory,
)
from alpsci.api.errors import register_error_handlers
from alpsci.api.middleware.request_id import RequestIDMiddleware
from alpsci.api.routers import builds
from alpsci.core.logging import setup_logging
from alpsci.scheduler import create_scheduler


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: init DB, start the sync scheduler. Shutdown: stop it, dispose engine."""
    factory = init_session_factory()
    scheduler = create_scheduler(
        factory,
        sync_runner=get_sync_runner(),
        client_factory=get_client_factory(),
    )
    await scheduler.start()
    yield
    await scheduler.stop()
    await dispose_engine()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="alpsci",
        docs_url="/api/v1/docs",
        openapi_url="/api/v1/openapi.json",
        lifespan=_lifespan,
    )

    register_error_handlers(app)

    cors_origins = os.environ.get("ALPSCI_CORS_ORIGINS", "http://localhost:3000")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health", tags=["ops"])
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(builds.router, prefix="/api/v1/builds", tags=["builds"])

    return app
