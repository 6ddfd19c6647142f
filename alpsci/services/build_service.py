"""BuildService — build lookup and repository-metadata cache write-back."""

from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.dao.build_dao import BuildDAO
from alpsci.models.build import Build
from alpsci.services import NotFoundError


class BuildService:
    """Stateless service for builds."""

    def __init__(self, build_dao: BuildDAO) -> None:
        self._build_dao = build_dao

    async def get(self, session: AsyncSession, tenant_id: uuid.UUID, build_id: uuid.UUID) -> Build:
        """Return the build.

        Raises :class:`NotFoundError` if it does not exist for *tenant_id*.
        """
        build = await self._build_dao.get(session, tenant_id, build_id)
        if build is None:
            raise NotFoundError("build not found")
        return build

    async def list_all(self, session: AsyncSession) -> list[Build]:
        """Return every build (scheduler full scan)."""
        return await self._build_dao.list_all(session)

    async def find_by_repository(
        self,
        session: AsyncSession,
        organization: str,
        repository: str,
        tenant_id: uuid.UUID | None = None,
    ) -> list[Build]:
        return await self._build_dao.find_by_repository(
            session, organization, repository, tenant_id
        )

    async def update_repo_cache(self, session: AsyncSession, build: Build, **fields) -> Build:
        """Persist refreshed repository metadata onto *build*."""
        updated = await self._build_dao.update_repo_cache(
            session, build.tenant_id, build.id, **fields
        )
        if updated is None:
            raise NotFoundError("build not found")
        return updated
