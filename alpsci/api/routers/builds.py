"""Builds router — statistics snapshots and on-demand sync."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alpsci.api.deps import (
    get_auto_sync_use_case,
    get_build_service,
    get_client_factory,
    get_details_use_case,
    get_session,
    get_session_factory,
    get_stats_use_case,
    get_sync_use_case,
    get_tenant_id,
    get_token_service,
)
from alpsci.api.schemas.stats import (
    BuildDetailsResponse,
    BuildStatsResponse,
    SyncResultResponse,
)
from alpsci.engines.build_stats.aggregator import FetchBuildStatsUseCase
from alpsci.engines.build_stats.details import FetchBuildDetailsStatsUseCase
from alpsci.engines.build_sync.runner import (
    AutoSyncBuildIfNeededUseCase,
    ClientFactory,
    SyncBuildHistoryUseCase,
)
from alpsci.services.build_service import BuildService
from alpsci.services.token_service import TokenResolutionService

router = APIRouter()


@router.get("/{build_id}/stats", response_model=BuildStatsResponse)
async def get_build_stats(
    build_id: uuid.UUID,
    refresh: bool = Query(False),
    sync: bool = Query(False, description="Sync history first when the head commit moved"),
    session: AsyncSession = Depends(get_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    builds: BuildService = Depends(get_build_service),
    tokens: TokenResolutionService = Depends(get_token_service),
    client_factory: ClientFactory = Depends(get_client_factory),
    stats: FetchBuildStatsUseCase = Depends(get_stats_use_case),
    auto_sync: AutoSyncBuildIfNeededUseCase = Depends(get_auto_sync_use_case),
) -> BuildStatsResponse:
    build = await builds.get(session, tenant_id, build_id)
    token = await tokens.resolve_token(session, build)
    async with client_factory(build, token) as client:
        if refresh:
            client.invalidate_repository(build.organization, build.repository)
        if sync:
            await auto_sync.execute(session, build, client)
        result = await stats.execute(session, build, client)
    return BuildStatsResponse.model_validate(result)


@router.get("/{build_id}/details", response_model=BuildDetailsResponse)
async def get_build_details(
    build_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    builds: BuildService = Depends(get_build_service),
    tokens: TokenResolutionService = Depends(get_token_service),
    client_factory: ClientFactory = Depends(get_client_factory),
    details: FetchBuildDetailsStatsUseCase = Depends(get_details_use_case),
) -> BuildDetailsResponse:
    build = await builds.get(session, tenant_id, build_id)
    token = await tokens.resolve_token(session, build)
    async with client_factory(build, token) as client:
        result = await details.execute(session, build, client)
    return BuildDetailsResponse.model_validate(result)


@router.post("/{build_id}/sync", response_model=SyncResultResponse)
async def sync_build(
    build_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    builds: BuildService = Depends(get_build_service),
    tokens: TokenResolutionService = Depends(get_token_service),
    client_factory: ClientFactory = Depends(get_client_factory),
    sync: SyncBuildHistoryUseCase = Depends(get_sync_use_case),
) -> SyncResultResponse:
    # own session: a failed sync still commits its recorded error
    async with factory() as session:
        build = await builds.get(session, tenant_id, build_id)
        token = await tokens.resolve_token(session, build)
        try:
            async with client_factory(build, token) as client:
                result = await sync.execute(session, build, client)
        except Exception:
            await session.commit()
            raise
        await session.commit()
    return SyncResultResponse.model_validate(result)
