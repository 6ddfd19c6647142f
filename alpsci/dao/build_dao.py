"""BuildDAO — builds table operations."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.base import BaseDAO
from alpsci.models.build import Build

# Columns the statistics aggregator writes back after a live-metadata refresh.
REPO_CACHE_FIELDS = frozenset(
    {
        "last_analyzed_commit_sha",
        "tags",
        "total_commits",
        "total_contributors",
        "cached_commits_last_7_days",
        "cached_contributors_last_7_days",
    }
)


class BuildDAO(BaseDAO[Build]):
    model = Build

    # ── read ──────────────────────────────────────────────────────────────

    async def list_all(self, session: AsyncSession) -> list[Build]:
        """Return every build across tenants (scheduler full scan)."""
        stmt = select(Build).order_by(Build.organization, Build.repository, Build.name)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_repository(
        self,
        session: AsyncSession,
        organization: str,
        repository: str,
        tenant_id: uuid.UUID | None = None,
    ) -> list[Build]:
        """Return builds tracking *organization*/*repository*.

        Without *tenant_id* the lookup spans tenants; only operator tooling
        (the CLI) calls it that way.
        """
        stmt = select(Build).where(
            Build.organization == organization,
            Build.repository == repository,
        )
        if tenant_id is not None:
            stmt = stmt.where(Build.tenant_id == tenant_id)
        result = await session.execute(stmt.order_by(Build.created_at))
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def update_repo_cache(
        self, session: AsyncSession, tenant_id: uuid.UUID, pk: uuid.UUID, **fields
    ) -> Build | None:
        """Write refreshed repository metadata back onto the build."""
        unknown = set(fields) - REPO_CACHE_FIELDS
        if unknown:
            raise AttributeError(f"not a repository cache field: {sorted(unknown)}")
        return await self.update(session, tenant_id, pk, **fields)
