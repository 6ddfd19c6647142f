"""BuildSyncStatusDAO — build_sync_status table operations."""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.base import BaseDAO, upsert_statement
from alpsci.models.build_sync_status import BuildSyncStatus

_WRITABLE = frozenset(
    {
        "last_synced_at",
        "last_synced_run_id",
        "last_synced_run_created_at",
        "initial_backfill_completed",
        "initial_backfill_completed_at",
        "total_runs_synced",
        "last_sync_error",
    }
)


class BuildSyncStatusDAO(BaseDAO[BuildSyncStatus]):
    model = BuildSyncStatus

    async def find_by_build(
        self, session: AsyncSession, tenant_id: uuid.UUID, build_id: uuid.UUID
    ) -> BuildSyncStatus | None:
        stmt = self._scoped(tenant_id).where(BuildSyncStatus.build_id == build_id)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def upsert(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        build_id: uuid.UUID,
        **fields: Any,
    ) -> BuildSyncStatus:
        """Create the status row or update only the passed *fields*.

        ON CONFLICT (build_id) DO UPDATE SET <fields>. Columns not passed
        keep their stored values; ``None`` is written as NULL.
        """
        unknown = set(fields) - _WRITABLE
        if unknown:
            raise AttributeError(f"BuildSyncStatus has no writable column(s) {sorted(unknown)}")

        stmt = upsert_statement(session, BuildSyncStatus).values(
            id=uuid.uuid4(), tenant_id=tenant_id, build_id=build_id, **fields
        )
        if fields:
            stmt = stmt.on_conflict_do_update(
                index_elements=["build_id"],
                set_={**{key: stmt.excluded[key] for key in fields}, "updated_at": func.now()},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=["build_id"])
        await session.execute(stmt)

        query = self._scoped(tenant_id).where(BuildSyncStatus.build_id == build_id)
        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalars().one()

    async def mark_backfill_complete(
        self, session: AsyncSession, tenant_id: uuid.UUID, build_id: uuid.UUID
    ) -> None:
        """Flip initial_backfill_completed to true; no-op if already set."""
        stmt = (
            update(BuildSyncStatus)
            .where(
                BuildSyncStatus.tenant_id == tenant_id,
                BuildSyncStatus.build_id == build_id,
                BuildSyncStatus.initial_backfill_completed.is_(False),
            )
            .values(
                initial_backfill_completed=True,
                initial_backfill_completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session="fetch")
        )
        await session.execute(stmt)
