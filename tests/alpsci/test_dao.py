"""DAO tests against in-memory SQLite: tenant scoping and upsert semantics."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from alpsci.dao.build_dao import BuildDAO
from alpsci.dao.build_sync_status_dao import BuildSyncStatusDAO
from alpsci.dao.test_result_dao import TestResultDAO
from alpsci.dao.workflow_run_dao import WorkflowRunDAO
from alpsci.models.build_sync_status import BuildSyncStatus
from alpsci.models.workflow_run import WorkflowRunRecord

T0 = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


def _record(run_id: int, *, created: datetime = T0, status: str = "success", **overrides):
    values = {
        "github_run_id": run_id,
        "name": "CI",
        "status": status,
        "conclusion": status,
        "html_url": f"https://github.com/acme/widgets/actions/runs/{run_id}",
        "head_branch": "main",
        "event": "push",
        "duration": 1000,
        "commit_sha": f"sha{run_id}",
        "commit_message": "initial",
        "commit_author": "ada",
        "commit_date": created,
        "workflow_created_at": created,
        "workflow_updated_at": created,
        "synced_at": created,
    }
    values.update(overrides)
    return values


async def _run_count(session, tenant_id, build_id) -> int:
    stmt = select(func.count()).where(
        WorkflowRunRecord.tenant_id == tenant_id, WorkflowRunRecord.build_id == build_id
    )
    return (await session.execute(stmt)).scalar_one()


async def _reload_status(session, tenant_id, build_id) -> BuildSyncStatus:
    stmt = (
        BuildSyncStatusDAO()
        ._scoped(tenant_id)
        .where(BuildSyncStatus.build_id == build_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalars().one()


# ── TestBaseDAO ───────────────────────────────────────────────────────────


class TestBaseDAO:
    @pytest.mark.anyio
    async def test_get_is_tenant_scoped(self, session, build):
        dao = BuildDAO()
        assert (await dao.get(session, build.tenant_id, build.id)).name == "main-ci"
        assert await dao.get(session, uuid.uuid4(), build.id) is None

    @pytest.mark.anyio
    async def test_get_requires_pk(self, session, tenant_id):
        with pytest.raises(ValueError, match="pk"):
            await BuildDAO().get(session, tenant_id, None)

    @pytest.mark.anyio
    async def test_create_requires_tenant(self, session):
        with pytest.raises(ValueError, match="tenant_id"):
            await BuildDAO().create(session, name="x", organization="o", repository="r")

    @pytest.mark.anyio
    async def test_update_rejects_immutable_and_unknown(self, session, build):
        dao = BuildDAO()
        with pytest.raises(AttributeError, match="immutable"):
            await dao.update(session, build.tenant_id, build.id, created_at=T0)
        with pytest.raises(AttributeError, match="immutable"):
            await dao.update(session, build.tenant_id, build.id, id=uuid.uuid4())
        with pytest.raises(AttributeError, match="no column"):
            await dao.update(session, build.tenant_id, build.id, nonsense=1)

    @pytest.mark.anyio
    async def test_update_other_tenant_is_noop(self, session, build):
        assert await BuildDAO().update(session, uuid.uuid4(), build.id, name="stolen") is None
        assert build.name == "main-ci"

    @pytest.mark.anyio
    async def test_list_for_tenant(self, session, build):
        dao = BuildDAO()
        await dao.create(
            session,
            tenant_id=uuid.uuid4(),
            name="other",
            organization="acme",
            repository="widgets",
            selectors=[],
        )
        assert [b.id for b in await dao.list_for_tenant(session, build.tenant_id)] == [build.id]


# ── TestBuildDAO ──────────────────────────────────────────────────────────


class TestBuildDAO:
    @pytest.mark.anyio
    async def test_find_by_repository(self, session, build):
        dao = BuildDAO()
        other = await dao.create(
            session,
            tenant_id=uuid.uuid4(),
            name="nightly",
            organization="acme",
            repository="widgets",
            selectors=[],
        )

        across = await dao.find_by_repository(session, "acme", "widgets")
        scoped = await dao.find_by_repository(session, "acme", "widgets", other.tenant_id)

        assert {b.id for b in across} == {build.id, other.id}
        assert [b.id for b in scoped] == [other.id]
        assert await dao.find_by_repository(session, "acme", "gadgets") == []

    @pytest.mark.anyio
    async def test_update_repo_cache(self, session, build):
        dao = BuildDAO()
        updated = await dao.update_repo_cache(
            session, build.tenant_id, build.id, last_analyzed_commit_sha="abc", tags=["v1"]
        )
        assert updated.last_analyzed_commit_sha == "abc"
        assert updated.tags == ["v1"]

        with pytest.raises(AttributeError, match="repository cache field"):
            await dao.update_repo_cache(session, build.tenant_id, build.id, name="renamed")

    @pytest.mark.anyio
    async def test_list_all_spans_tenants(self, session, build):
        await BuildDAO().create(
            session,
            tenant_id=uuid.uuid4(),
            name="other",
            organization="zeta",
            repository="app",
            selectors=[],
        )
        assert len(await BuildDAO().list_all(session)) == 2


# ── TestWorkflowRunDAO ────────────────────────────────────────────────────


class TestWorkflowRunDAO:
    @pytest.mark.anyio
    async def test_upsert_inserts_newest_first(self, session, build):
        dao = WorkflowRunDAO()
        rows = await dao.bulk_upsert(
            session,
            build.tenant_id,
            build.id,
            [_record(1), _record(2, created=T0 + timedelta(hours=1))],
        )

        assert [r.github_run_id for r in rows] == [2, 1]
        assert all(r.tenant_id == build.tenant_id for r in rows)
        assert await _run_count(session, build.tenant_id, build.id) == 2

    @pytest.mark.anyio
    async def test_upsert_refreshes_provider_columns_only(self, session, build):
        dao = WorkflowRunDAO()
        [first] = await dao.bulk_upsert(
            session, build.tenant_id, build.id, [_record(1, status="in_progress")]
        )
        original_id = first.id

        [again] = await dao.bulk_upsert(
            session,
            build.tenant_id,
            build.id,
            [_record(1, status="failure", commit_message="rewritten", duration=5000)],
        )

        assert again.id == original_id
        assert again.status == "failure"
        assert again.duration == 5000
        assert again.commit_message == "initial"
        assert await _run_count(session, build.tenant_id, build.id) == 1

    @pytest.mark.anyio
    async def test_upsert_collapses_duplicate_run_ids(self, session, build):
        rows = await WorkflowRunDAO().bulk_upsert(
            session, build.tenant_id, build.id, [_record(7), _record(7, status="failure")]
        )
        assert len(rows) == 1
        assert rows[0].status == "success"

    @pytest.mark.anyio
    async def test_upsert_empty(self, session, build):
        assert await WorkflowRunDAO().bulk_upsert(session, build.tenant_id, build.id, []) == []

    @pytest.mark.anyio
    async def test_reads_are_tenant_scoped(self, session, build):
        dao = WorkflowRunDAO()
        await dao.bulk_upsert(session, build.tenant_id, build.id, [_record(1)])
        stranger = uuid.uuid4()

        assert await dao.find_by_github_run_ids(session, stranger, build.id, [1]) == {}
        assert await dao.list_in_range(session, stranger, build.id, T0 - timedelta(days=1)) == []
        assert await _run_count(session, stranger, build.id) == 0
        found = await dao.find_by_github_run_ids(session, build.tenant_id, build.id, [1, 2])
        assert set(found) == {1}

    @pytest.mark.anyio
    async def test_list_in_range_is_half_open(self, session, build):
        dao = WorkflowRunDAO()
        await dao.bulk_upsert(
            session,
            build.tenant_id,
            build.id,
            [
                _record(1, created=T0 - timedelta(seconds=1)),
                _record(2, created=T0),
                _record(3, created=T0 + timedelta(days=1)),
            ],
        )

        rows = await dao.list_in_range(
            session, build.tenant_id, build.id, T0, T0 + timedelta(days=1)
        )
        assert [r.github_run_id for r in rows] == [2]

        open_ended = await dao.list_in_range(session, build.tenant_id, build.id, T0)
        assert [r.github_run_id for r in open_ended] == [3, 2]


# ── TestTestResultDAO ─────────────────────────────────────────────────────


class TestTestResultDAO:
    @pytest.mark.anyio
    async def test_existing_run_ids_and_joins(self, session, build):
        runs = await WorkflowRunDAO().bulk_upsert(
            session,
            build.tenant_id,
            build.id,
            [_record(1), _record(2, created=T0 + timedelta(hours=1))],
        )
        newer, older = runs
        dao = TestResultDAO()
        await dao.create(
            session,
            tenant_id=build.tenant_id,
            build_id=build.id,
            workflow_run_id=older.id,
            total_tests=3,
            passed_tests=3,
            failed_tests=0,
            skipped_tests=0,
            parsed_at=T0,
        )

        assert await dao.existing_run_ids(
            session, build.tenant_id, [newer.id, older.id]
        ) == {older.id}
        assert await dao.existing_run_ids(session, uuid.uuid4(), [older.id]) == set()
        assert await dao.existing_run_ids(session, build.tenant_id, []) == set()

        [(result, run)] = await dao.list_with_runs(session, build.tenant_id, build.id)
        assert run.github_run_id == 1
        assert result.total_tests == 3
        assert (await dao.latest_for_build(session, build.tenant_id, build.id)).id == result.id
        assert await dao.latest_for_build(session, uuid.uuid4(), build.id) is None

    @pytest.mark.anyio
    async def test_latest_follows_run_order_not_parse_order(self, session, build):
        newer, older = await WorkflowRunDAO().bulk_upsert(
            session,
            build.tenant_id,
            build.id,
            [_record(1), _record(2, created=T0 + timedelta(hours=1))],
        )
        dao = TestResultDAO()
        # a backfill stores the newest run's result first
        for run, total, parsed in ((newer, 9, T0), (older, 4, T0 + timedelta(minutes=1))):
            await dao.create(
                session,
                tenant_id=build.tenant_id,
                build_id=build.id,
                workflow_run_id=run.id,
                total_tests=total,
                passed_tests=total,
                failed_tests=0,
                skipped_tests=0,
                parsed_at=parsed,
            )

        latest = await dao.latest_for_build(session, build.tenant_id, build.id)
        assert latest.workflow_run_id == newer.id
        assert latest.total_tests == 9


# ── TestBuildSyncStatusDAO ────────────────────────────────────────────────


class TestBuildSyncStatusDAO:
    @pytest.mark.anyio
    async def test_upsert_without_fields_creates_once(self, session, build):
        dao = BuildSyncStatusDAO()
        first = await dao.upsert(session, build.tenant_id, build.id)
        second = await dao.upsert(session, build.tenant_id, build.id)

        assert first.id == second.id
        assert first.initial_backfill_completed is False
        assert (first.total_runs_synced or 0) == 0

    @pytest.mark.anyio
    async def test_partial_upsert_keeps_other_columns(self, session, build):
        dao = BuildSyncStatusDAO()
        await dao.upsert(
            session,
            build.tenant_id,
            build.id,
            total_runs_synced=12,
            last_synced_run_id=99,
            last_synced_at=T0,
        )
        await dao.upsert(session, build.tenant_id, build.id, last_sync_error="rate limited")

        status = await _reload_status(session, build.tenant_id, build.id)
        assert status.last_sync_error == "rate limited"
        assert status.total_runs_synced == 12
        assert status.last_synced_run_id == 99

        await dao.upsert(session, build.tenant_id, build.id, last_sync_error=None)
        status = await _reload_status(session, build.tenant_id, build.id)
        assert status.last_sync_error is None
        assert status.total_runs_synced == 12

    @pytest.mark.anyio
    async def test_upsert_rejects_unknown_columns(self, session, build):
        dao = BuildSyncStatusDAO()
        with pytest.raises(AttributeError, match="writable"):
            await dao.upsert(session, build.tenant_id, build.id, nonsense=1)
        with pytest.raises(AttributeError, match="writable"):
            await dao.upsert(session, build.tenant_id, build.id, created_at=T0)
        assert await dao.find_by_build(session, build.tenant_id, build.id) is None

    @pytest.mark.anyio
    async def test_mark_backfill_complete_is_idempotent(self, session, build):
        dao = BuildSyncStatusDAO()
        await dao.upsert(session, build.tenant_id, build.id)

        await dao.mark_backfill_complete(session, build.tenant_id, build.id)
        first = await _reload_status(session, build.tenant_id, build.id)
        completed_at = first.initial_backfill_completed_at

        await dao.mark_backfill_complete(session, build.tenant_id, build.id)
        second = await _reload_status(session, build.tenant_id, build.id)

        assert second.initial_backfill_completed is True
        assert completed_at is not None
        assert second.initial_backfill_completed_at == completed_at
