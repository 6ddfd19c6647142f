"""Dependency injection — session, tenant auth, cache and service singletons."""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from alpsci.core.cache import ReadThroughCache
from alpsci.core.database import create_session_factory
from alpsci.dao.access_token_dao import AccessTokenDAO
from alpsci.dao.build_dao import BuildDAO
from alpsci.dao.build_sync_status_dao import BuildSyncStatusDAO
from alpsci.dao.test_result_dao import TestResultDAO
from alpsci.dao.workflow_run_dao import WorkflowRunDAO
from alpsci.engines.build_stats.aggregator import FetchBuildStatsUseCase
from alpsci.engines.build_stats.details import FetchBuildDetailsStatsUseCase
from alpsci.engines.build_sync.cached_client import CachedGitHubClient
from alpsci.engines.build_sync.github_client import GitHubClient
from alpsci.engines.build_sync.runner import (
    AutoSyncBuildIfNeededUseCase,
    BuildSyncRunner,
    ClientFactory,
    SyncBuildHistoryUseCase,
)
from alpsci.models.build import Build
from alpsci.services import AuthenticationError
from alpsci.services.build_service import BuildService
from alpsci.services.sync_status_service import SyncStatusService
from alpsci.services.test_result_service import TestResultService
from alpsci.services.token_service import TokenResolutionService
from alpsci.services.workflow_run_service import WorkflowRunService

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# DAO singletons
# ---------------------------------------------------------------------------
_build_dao = BuildDAO()
_workflow_run_dao = WorkflowRunDAO()
_test_result_dao = TestResultDAO()
_sync_status_dao = BuildSyncStatusDAO()
_access_token_dao = AccessTokenDAO()

# ---------------------------------------------------------------------------
# Service singletons
# ---------------------------------------------------------------------------
_build_service = BuildService(_build_dao)
_workflow_run_service = WorkflowRunService(_workflow_run_dao)
_test_result_service = TestResultService(_test_result_dao)
_sync_status_service = SyncStatusService(_sync_status_dao)
_token_service = TokenResolutionService(_access_token_dao)

_sync_use_case = SyncBuildHistoryUseCase(
    _workflow_run_service, _test_result_service, _sync_status_service
)
_auto_sync_use_case = AutoSyncBuildIfNeededUseCase(_sync_use_case)
_sync_runner = BuildSyncRunner(
    _build_service, _token_service, _sync_status_service, _sync_use_case
)
_stats_use_case = FetchBuildStatsUseCase(
    _workflow_run_service, _test_result_service, _build_service
)
_details_use_case = FetchBuildDetailsStatsUseCase(
    _stats_use_case, _workflow_run_service, _test_result_service
)

# One cache per process, shared by every GitHub client built here.
_cache = ReadThroughCache()

# ---------------------------------------------------------------------------
# Engine / session factory (initialised by app lifespan)
# ---------------------------------------------------------------------------
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_session_factory(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the async engine and session factory. Called once at startup."""
    global _session_factory  # noqa: PLW0603
    _session_factory = create_session_factory(database_url)
    return _session_factory


async def dispose_engine() -> None:
    """Dispose the async engine, closing all pooled connections."""
    global _session_factory  # noqa: PLW0603
    if _session_factory is not None:
        engine: AsyncEngine = _session_factory.kw["bind"]
        await engine.dispose()
        _session_factory = None


def set_session_factory(factory: async_sessionmaker[AsyncSession]) -> None:
    """Override session factory (for testing)."""
    global _session_factory  # noqa: PLW0603
    _session_factory = factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("call init_session_factory() before handling requests")
    return _session_factory


async def get_session(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a per-request session with automatic commit/rollback."""
    async with factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _get_secret() -> str:
    secret = os.environ.get("ALPSCI_JWT_SECRET")
    if not secret:
        raise RuntimeError("ALPSCI_JWT_SECRET environment variable is not set")
    return secret


async def get_tenant_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> uuid.UUID:
    """Validate the Bearer token and return the tenant it was issued for."""
    if credentials is None:
        raise AuthenticationError("missing authorization header")
    try:
        payload = jwt.decode(credentials.credentials, _get_secret(), algorithms=[_ALGORITHM])
    except JWTError:
        raise AuthenticationError("invalid access token")

    try:
        return uuid.UUID(str(payload["tenant_id"]))
    except (KeyError, ValueError):
        raise AuthenticationError("invalid token payload")


# ---------------------------------------------------------------------------
# GitHub client factory
# ---------------------------------------------------------------------------


def _cached_client_factory(build: Build, token: str) -> CachedGitHubClient:
    return CachedGitHubClient(GitHubClient(token), _cache, build.cache_expiration_minutes)


def get_client_factory() -> ClientFactory:
    return _cached_client_factory


# ---------------------------------------------------------------------------
# Service getters (for Depends())
# ---------------------------------------------------------------------------


def get_build_service() -> BuildService:
    return _build_service


def get_token_service() -> TokenResolutionService:
    return _token_service


def get_sync_use_case() -> SyncBuildHistoryUseCase:
    return _sync_use_case


def get_sync_runner() -> BuildSyncRunner:
    return _sync_runner


def get_auto_sync_use_case() -> AutoSyncBuildIfNeededUseCase:
    return _auto_sync_use_case


def get_stats_use_case() -> FetchBuildStatsUseCase:
    return _stats_use_case


def get_details_use_case() -> FetchBuildDetailsStatsUseCase:
    return _details_use_case
