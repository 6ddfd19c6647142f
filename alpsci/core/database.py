"""Async database engine, session factory, and declarative base."""

import os
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, MetaData, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

DEFAULT_DATABASE_URL = "postgresql+asyncpg://localhost/alpsci"

# Naming convention for constraints (Alembic auto-migration friendly)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""

    metadata = MetaData(naming_convention=convention)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``timezone=True`` columns;
    naive values are taken to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_session_factory(
    database_url: str | None = None,
    **engine_kwargs,
) -> async_sessionmaker[AsyncSession]:
    """Create an async engine and return a session factory bound to it."""
    url = database_url or os.environ.get("ALPSCI_DATABASE_URL", DEFAULT_DATABASE_URL)
    if url.startswith("postgresql"):
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_size", 10)
        engine_kwargs.setdefault("max_overflow", 20)
        engine_kwargs.setdefault("pool_recycle", 1800)
    engine = create_async_engine(url, **engine_kwargs)
    return async_sessionmaker(engine, expire_on_commit=False)
