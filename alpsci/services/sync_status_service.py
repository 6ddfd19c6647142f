"""SyncStatusService — per-build sync checkpoint."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.build_sync_status_dao import BuildSyncStatusDAO
from alpsci.models.build import Build
from alpsci.models.build_sync_status import BuildSyncStatus
from alpsci.models.workflow_run import WorkflowRunRecord


class SyncStatusService:
    """Stateless service for BuildSyncStatus bookkeeping.

    Every write is a partial upsert, so recording an error never clobbers
    the counters and run pointers of the last successful pass.
    """

    def __init__(self, sync_status_dao: BuildSyncStatusDAO) -> None:
        self._dao = sync_status_dao

    async def get_or_create(self, session: AsyncSession, build: Build) -> BuildSyncStatus:
        """Return the checkpoint, creating an empty one on first use."""
        status = await self._dao.find_by_build(session, build.tenant_id, build.id)
        if status is not None:
            return status
        return await self._dao.upsert(session, build.tenant_id, build.id)

    async def record_success(
        self,
        session: AsyncSession,
        build: Build,
        *,
        previous_total: int,
        runs_synced: int,
        synced_at: datetime,
        latest_run: WorkflowRunRecord | None = None,
    ) -> BuildSyncStatus:
        """Advance counters and run pointers; clear the last error."""
        fields = {
            "total_runs_synced": previous_total + runs_synced,
            "last_synced_at": synced_at,
            "last_sync_error": None,
        }
        if latest_run is not None:
            fields["last_synced_run_id"] = latest_run.github_run_id
            fields["last_synced_run_created_at"] = latest_run.workflow_created_at
        return await self._dao.upsert(session, build.tenant_id, build.id, **fields)

    async def record_error(
        self, session: AsyncSession, build: Build, message: str
    ) -> BuildSyncStatus:
        return await self._dao.upsert(session, build.tenant_id, build.id, last_sync_error=message)

    async def mark_backfill_complete(self, session: AsyncSession, build: Build) -> None:
        """Idempotent: a completed backfill is never reverted."""
        await self._dao.mark_backfill_complete(session, build.tenant_id, build.id)
