"""WorkflowRunDAO — workflow_runs table operations."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.base import BaseDAO, upsert_statement
from alpsci.models.workflow_run import WorkflowRunRecord

# Provider-owned columns refreshed when a run is synced again. Commit
# metadata and row identity are written once, on first insert.
UPSERT_UPDATE_COLUMNS = (
    "name",
    "status",
    "conclusion",
    "html_url",
    "head_branch",
    "event",
    "duration",
    "workflow_updated_at",
    "synced_at",
)

# rows per INSERT statement
_UPSERT_BATCH_SIZE = 500


class WorkflowRunDAO(BaseDAO[WorkflowRunRecord]):
    model = WorkflowRunRecord

    # ── read ──────────────────────────────────────────────────────────────

    def _for_build(self, tenant_id: uuid.UUID, build_id: uuid.UUID):
        return self._scoped(tenant_id).where(WorkflowRunRecord.build_id == build_id)

    async def find_by_github_run_ids(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        build_id: uuid.UUID,
        github_run_ids: list[int],
    ) -> dict[int, WorkflowRunRecord]:
        """Map provider run id → persisted record for the ids that exist."""
        if not github_run_ids:
            return {}
        stmt = self._for_build(tenant_id, build_id).where(
            WorkflowRunRecord.github_run_id.in_(github_run_ids)
        )
        result = await session.execute(stmt)
        return {row.github_run_id: row for row in result.scalars().all()}

    async def list_in_range(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        build_id: uuid.UUID,
        start: datetime,
        end: datetime | None = None,
    ) -> list[WorkflowRunRecord]:
        """Runs created in ``[start, end)``, newest first."""
        stmt = self._for_build(tenant_id, build_id).where(
            WorkflowRunRecord.workflow_created_at >= start
        )
        if end is not None:
            stmt = stmt.where(WorkflowRunRecord.workflow_created_at < end)
        stmt = stmt.order_by(WorkflowRunRecord.workflow_created_at.desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def bulk_upsert(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        build_id: uuid.UUID,
        records: list[dict[str, Any]],
    ) -> list[WorkflowRunRecord]:
        """Insert or refresh *records* keyed by (build_id, github_run_id).

        ON CONFLICT (build_id, github_run_id) DO UPDATE over the
        provider-owned columns only. Returns the persisted rows, newest
        first by workflow creation time.
        """
        if not records:
            return []

        rows = []
        seen: set[int] = set()
        for record in records:
            # one row per run id; a second ON CONFLICT hit in one statement fails
            if record["github_run_id"] in seen:
                continue
            seen.add(record["github_run_id"])
            row = dict(record)
            row.setdefault("id", uuid.uuid4())
            row["tenant_id"] = tenant_id
            row["build_id"] = build_id
            rows.append(row)

        for start in range(0, len(rows), _UPSERT_BATCH_SIZE):
            stmt = upsert_statement(session, WorkflowRunRecord).values(
                rows[start : start + _UPSERT_BATCH_SIZE]
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["build_id", "github_run_id"],
                set_={
                    **{col: stmt.excluded[col] for col in UPSERT_UPDATE_COLUMNS},
                    "updated_at": func.now(),
                },
            )
            await session.execute(stmt)

        run_ids = [row["github_run_id"] for row in rows]
        query = (
            self._for_build(tenant_id, build_id)
            .where(WorkflowRunRecord.github_run_id.in_(run_ids))
            .order_by(WorkflowRunRecord.workflow_created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        return list(result.scalars().all())
