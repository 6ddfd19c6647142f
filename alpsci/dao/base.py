"""Generic tenant-scoped base DAO — CRUD (ORM) + dialect-aware upsert (Core)."""

import uuid
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.core.database import Base

ModelT = TypeVar("ModelT", bound=Base)

_IMMUTABLE = frozenset({"id", "tenant_id", "created_at", "updated_at"})


def upsert_statement(session: AsyncSession, model: type[Base]):
    """Return an ``INSERT`` construct supporting ``on_conflict_do_update``.

    PostgreSQL in production, SQLite in tests; both dialects expose the
    same ``excluded`` / ``on_conflict_*`` API.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


class BaseDAO(Generic[ModelT]):
    """Base data-access object. Subclasses set ``model`` class attribute.

    Every read and write is constrained by ``tenant_id``; a row belonging
    to another tenant is indistinguishable from a missing one.
    """

    model: type[ModelT]

    # ── ORM methods ──────────────────────────────────────────────────────

    @staticmethod
    def _require_pk(pk: uuid.UUID) -> None:
        """Raise ValueError if *pk* is None."""
        if pk is None:
            raise ValueError("pk must not be None")

    def _scoped(self, tenant_id: uuid.UUID) -> Select:
        return select(self.model).where(self.model.tenant_id == tenant_id)

    async def get(
        self, session: AsyncSession, tenant_id: uuid.UUID, pk: uuid.UUID
    ) -> ModelT | None:
        self._require_pk(pk)
        result = await session.execute(self._scoped(tenant_id).where(self.model.id == pk))
        return result.scalars().first()

    async def create(self, session: AsyncSession, **values: Any) -> ModelT:
        if values.get("tenant_id") is None:
            raise ValueError("tenant_id is required")
        obj = self.model(**values)
        session.add(obj)
        await session.flush()
        await session.refresh(obj)
        return obj

    async def update(
        self, session: AsyncSession, tenant_id: uuid.UUID, pk: uuid.UUID, **values: Any
    ) -> ModelT | None:
        obj = await self.get(session, tenant_id, pk)
        if obj is None:
            return None
        column_keys = set(self.model.__mapper__.column_attrs.keys())
        for key in values:
            if key in _IMMUTABLE:
                raise AttributeError(f"'{key}' is immutable and cannot be updated")
            if key not in column_keys:
                raise AttributeError(f"{self.model.__name__} has no column '{key}'")
        for key, val in values.items():
            setattr(obj, key, val)
        await session.flush()
        await session.refresh(obj)
        return obj

    async def list_for_tenant(self, session: AsyncSession, tenant_id: uuid.UUID) -> list[ModelT]:
        stmt = self._scoped(tenant_id).order_by(self.model.created_at)
        result = await session.execute(stmt)
        return list(result.scalars().all())
