"""Shared fixtures for alpsci tests.

Database tests run against an in-memory SQLite database through
aiosqlite; every test gets a fresh schema.
"""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import alpsci.models  # noqa: F401  (registers every table on Base.metadata)
from alpsci.core.database import Base
from alpsci.models.build import Build

TEST_DB_URL = "sqlite+aiosqlite://"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    eng = create_async_engine(TEST_DB_URL, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as sess:
        yield sess


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


@pytest.fixture
async def build(session, tenant_id):
    """A persisted build with an inline token and no selectors."""
    obj = Build(
        tenant_id=tenant_id,
        name="main-ci",
        organization="acme",
        repository="widgets",
        selectors=[],
        personal_access_token="ghp_inline",
    )
    session.add(obj)
    await session.flush()
    await session.refresh(obj)
    return obj
