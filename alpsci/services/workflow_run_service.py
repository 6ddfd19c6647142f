"""WorkflowRunService — persisted workflow-run history."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.workflow_run_dao import WorkflowRunDAO
from alpsci.models.build import Build
from alpsci.models.workflow_run import WorkflowRunRecord


class WorkflowRunService:
    """Stateless service over the workflow_runs table."""

    def __init__(self, workflow_run_dao: WorkflowRunDAO) -> None:
        self._run_dao = workflow_run_dao

    async def bulk_upsert(
        self, session: AsyncSession, build: Build, records: list[dict[str, Any]]
    ) -> list[WorkflowRunRecord]:
        """Idempotent upsert keyed by (build_id, github_run_id); newest first."""
        return await self._run_dao.bulk_upsert(session, build.tenant_id, build.id, records)

    async def find_existing(
        self, session: AsyncSession, build: Build, github_run_ids: list[int]
    ) -> dict[int, WorkflowRunRecord]:
        return await self._run_dao.find_by_github_run_ids(
            session, build.tenant_id, build.id, github_run_ids
        )

    async def list_in_range(
        self,
        session: AsyncSession,
        build: Build,
        start: datetime,
        end: datetime | None = None,
    ) -> list[WorkflowRunRecord]:
        return await self._run_dao.list_in_range(session, build.tenant_id, build.id, start, end)
