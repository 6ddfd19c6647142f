"""Tests for the build history sync engine (SQLite-backed services, mocked GitHub)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from alpsci.dao.access_token_dao import AccessTokenDAO
from alpsci.dao.build_dao import BuildDAO
from alpsci.dao.build_sync_status_dao import BuildSyncStatusDAO
from alpsci.dao.test_result_dao import TestResultDAO
from alpsci.dao.workflow_run_dao import WorkflowRunDAO
from alpsci.engines.build_sync.github_client import GitHubAPIError
from alpsci.engines.build_sync.models import Artifact, CommitInfo, WorkflowRun
from alpsci.engines.build_sync.runner import (
    ARTIFACT_FETCH_LIMIT,
    INCREMENTAL_RUN_LIMIT,
    AutoSyncBuildIfNeededUseCase,
    BuildSyncRunner,
    SyncBuildHistoryUseCase,
    fetch_window,
)
from alpsci.models.build import Build
from alpsci.models.build_sync_status import BuildSyncStatus
from alpsci.models.test_result import TestResultRecord
from alpsci.models.workflow_run import WorkflowRunRecord
from alpsci.services.build_service import BuildService
from alpsci.services.sync_status_service import SyncStatusService
from alpsci.services.test_result_service import TestResultService
from alpsci.services.token_service import TokenResolutionService
from alpsci.services.workflow_run_service import WorkflowRunService

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
REPORT = '<testsuite name="unit" tests="3" failures="1"/>'


def _run(
    run_id: int,
    *,
    minutes: int = 0,
    status: str = "success",
    branch: str = "main",
    name: str = "CI",
) -> WorkflowRun:
    created = T0 + timedelta(minutes=minutes)
    return WorkflowRun(
        id=run_id,
        name=name,
        status=status,
        conclusion=None if status in ("queued", "in_progress") else status,
        html_url=f"https://github.com/acme/widgets/actions/runs/{run_id}",
        created_at=created,
        updated_at=created,
        head_branch=branch,
        head_sha=f"sha{run_id}",
    )


def _client(runs: list[WorkflowRun]) -> MagicMock:
    client = MagicMock()
    client.__aenter__.return_value = client
    client.fetch_workflow_runs = AsyncMock(return_value=runs)
    client.fetch_tags = AsyncMock(return_value=[])
    client.fetch_artifacts = AsyncMock(
        side_effect=lambda org, repo, run_id: [Artifact(id=run_id * 10, name="test-results")]
    )
    client.download_artifact = AsyncMock(return_value=REPORT)
    client.fetch_last_commit = AsyncMock(return_value=None)
    return client


@pytest.fixture
def sync_status_service():
    return SyncStatusService(BuildSyncStatusDAO())


@pytest.fixture
def use_case(sync_status_service):
    return SyncBuildHistoryUseCase(
        WorkflowRunService(WorkflowRunDAO()),
        TestResultService(TestResultDAO()),
        sync_status_service,
    )


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _status(session, build) -> BuildSyncStatus:
    result = await session.execute(
        select(BuildSyncStatus)
        .where(BuildSyncStatus.build_id == build.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().one()


# ── TestFetchWindow ───────────────────────────────────────────────────────


class TestFetchWindow:
    def test_full_history_before_backfill(self):
        status = BuildSyncStatus(initial_backfill_completed=False)
        assert fetch_window(status, T0) == (None, None)

    def test_incremental_after_backfill(self):
        status = BuildSyncStatus(
            initial_backfill_completed=True, last_synced_run_created_at=T0
        )
        assert fetch_window(status, T0 + timedelta(days=1)) == (T0, INCREMENTAL_RUN_LIMIT)

    def test_incremental_fallback_without_pointer(self):
        status = BuildSyncStatus(initial_backfill_completed=True)
        since, limit = fetch_window(status, T0)
        assert since == datetime(2026, 1, 30, tzinfo=timezone.utc)
        assert limit == INCREMENTAL_RUN_LIMIT


# ── TestSyncBuildHistory ──────────────────────────────────────────────────


class TestSyncBuildHistory:
    @pytest.mark.anyio
    async def test_persists_runs_and_test_results(self, session, build, use_case):
        client = _client([_run(1, minutes=0), _run(2, minutes=5), _run(3, minutes=10)])

        result = await use_case.execute(session, build, client)

        assert result.new_runs_synced == 3
        assert result.test_results_parsed == 3
        assert await _count(session, WorkflowRunRecord) == 3

        results = (await session.execute(select(TestResultRecord))).scalars().all()
        assert {(r.total_tests, r.passed_tests, r.failed_tests) for r in results} == {(3, 2, 1)}
        assert results[0].artifact_name == "test-results"
        assert results[0].test_cases[0]["name"] == "unit"

        status = await _status(session, build)
        assert status.total_runs_synced == 3
        assert status.last_synced_run_id == 3
        assert status.initial_backfill_completed is True
        assert status.last_sync_error is None

    @pytest.mark.anyio
    async def test_first_sync_requests_full_history(self, session, build, use_case):
        client = _client([_run(1, minutes=30)])
        await use_case.execute(session, build, client)
        client.fetch_workflow_runs.assert_awaited_once_with(
            "acme", "widgets", since=None, limit=None
        )

        client.fetch_workflow_runs.reset_mock()
        await use_case.execute(session, build, client)
        kwargs = client.fetch_workflow_runs.await_args.kwargs
        assert kwargs["since"] == T0 + timedelta(minutes=30)
        assert kwargs["limit"] == INCREMENTAL_RUN_LIMIT

    @pytest.mark.anyio
    async def test_resync_is_idempotent(self, session, build, use_case):
        runs = [_run(1), _run(2, minutes=1)]
        client = _client(runs)

        await use_case.execute(session, build, client)
        second = await use_case.execute(session, build, client)

        assert await _count(session, WorkflowRunRecord) == 2
        assert await _count(session, TestResultRecord) == 2
        assert second.test_results_parsed == 0
        assert client.download_artifact.await_count == 2

    @pytest.mark.anyio
    async def test_resync_refreshes_provider_fields(self, session, build, use_case):
        await use_case.execute(session, build, _client([_run(1, status="in_progress")]))
        await use_case.execute(session, build, _client([_run(1, status="failure")]))

        record = (await session.execute(select(WorkflowRunRecord))).scalars().one()
        assert record.status == "failure"
        assert record.commit_sha == "sha1"

    @pytest.mark.anyio
    async def test_pending_runs_skip_artifacts(self, session, build, use_case):
        client = _client([_run(1, status="queued"), _run(2, minutes=1, status="in_progress")])

        result = await use_case.execute(session, build, client)

        assert result.new_runs_synced == 2
        assert result.test_results_parsed == 0
        client.fetch_artifacts.assert_not_awaited()

    @pytest.mark.anyio
    async def test_artifact_fetch_is_capped_to_newest_runs(self, session, build, use_case):
        runs = [_run(i, minutes=i) for i in range(1, 61)]
        client = _client(runs)

        result = await use_case.execute(session, build, client)

        assert result.new_runs_synced == 60
        assert client.fetch_artifacts.await_count == ARTIFACT_FETCH_LIMIT
        fetched = {c.args[2] for c in client.fetch_artifacts.await_args_list}
        assert fetched == set(range(11, 61))

    @pytest.mark.anyio
    async def test_one_failing_run_does_not_abort_batch(self, session, build, use_case):
        client = _client([_run(1), _run(2, minutes=1), _run(3, minutes=2)])

        async def artifacts(org, repo, run_id):
            if run_id == 2:
                raise GitHubAPIError("boom", 500)
            return [Artifact(id=run_id * 10, name="test-results")]

        client.fetch_artifacts = AsyncMock(side_effect=artifacts)

        result = await use_case.execute(session, build, client)

        assert result.new_runs_synced == 3
        assert result.test_results_parsed == 2

    @pytest.mark.anyio
    async def test_unparseable_report_falls_through_to_next_candidate(
        self, session, build, use_case
    ):
        client = _client([_run(1)])
        client.fetch_artifacts = AsyncMock(
            return_value=[
                Artifact(id=1, name="coverage"),
                Artifact(id=2, name="unit-test-results"),
                Artifact(id=3, name="e2e-test-results"),
            ]
        )
        client.download_artifact = AsyncMock(side_effect=["<not-xml", REPORT])

        result = await use_case.execute(session, build, client)

        assert result.test_results_parsed == 1
        assert [c.args[2] for c in client.download_artifact.await_args_list] == [2, 3]
        stored = (await session.execute(select(TestResultRecord))).scalars().one()
        assert stored.artifact_name == "e2e-test-results"

    @pytest.mark.anyio
    async def test_empty_report_is_not_stored(self, session, build, use_case):
        client = _client([_run(1)])
        client.download_artifact = AsyncMock(return_value="<testsuite tests='0'/>")

        result = await use_case.execute(session, build, client)
        assert result.test_results_parsed == 0

    @pytest.mark.anyio
    async def test_selectors_filter_runs(self, session, build, use_case):
        build.selectors = [{"type": "branch", "pattern": "main"}]
        client = _client([_run(1, branch="main"), _run(2, minutes=1, branch="dev")])

        result = await use_case.execute(session, build, client)

        assert result.new_runs_synced == 1
        record = (await session.execute(select(WorkflowRunRecord))).scalars().one()
        assert record.github_run_id == 1
        client.fetch_tags.assert_not_awaited()

    @pytest.mark.anyio
    async def test_tag_selector_fetches_tags(self, session, build, use_case):
        build.selectors = [{"type": "tag", "pattern": "v*"}]
        client = _client([_run(1, branch="v1.0"), _run(2, minutes=1, branch="v-not-a-tag")])
        client.fetch_tags = AsyncMock(return_value=["v1.0"])

        result = await use_case.execute(session, build, client)

        assert result.new_runs_synced == 1
        client.fetch_tags.assert_awaited_once()

    @pytest.mark.anyio
    async def test_empty_batch_still_checkpoints(self, session, build, use_case):
        result = await use_case.execute(session, build, _client([]))

        assert result.new_runs_synced == 0
        status = await _status(session, build)
        assert status.initial_backfill_completed is True
        assert status.total_runs_synced == 0
        assert status.last_synced_at is not None

    @pytest.mark.anyio
    async def test_failure_is_recorded_and_reraised(self, session, build, use_case):
        await use_case.execute(session, build, _client([_run(1), _run(2, minutes=1)]))

        failing = _client([])
        failing.fetch_workflow_runs = AsyncMock(side_effect=GitHubAPIError("upstream down", 502))
        with pytest.raises(GitHubAPIError):
            await use_case.execute(session, build, failing)

        status = await _status(session, build)
        assert status.last_sync_error == "upstream down"
        assert status.total_runs_synced == 2
        assert status.last_synced_run_id == 2

    @pytest.mark.anyio
    async def test_success_clears_previous_error(self, session, build, use_case):
        failing = _client([])
        failing.fetch_workflow_runs = AsyncMock(side_effect=GitHubAPIError("down", 502))
        with pytest.raises(GitHubAPIError):
            await use_case.execute(session, build, failing)

        await use_case.execute(session, build, _client([_run(1)]))
        assert (await _status(session, build)).last_sync_error is None


# ── TestAutoSync ──────────────────────────────────────────────────────────


def _commit(sha: str) -> CommitInfo:
    return CommitInfo(sha=sha, message="m", author="a", date=T0, url="u")


class TestAutoSync:
    @pytest.mark.anyio
    async def test_skips_when_head_unchanged(self, build):
        build.last_analyzed_commit_sha = "abc"
        sync = MagicMock()
        sync.execute = AsyncMock()
        client = _client([])
        client.fetch_last_commit = AsyncMock(return_value=_commit("abc"))

        assert await AutoSyncBuildIfNeededUseCase(sync).execute(MagicMock(), build, client) is False
        sync.execute.assert_not_awaited()

    @pytest.mark.anyio
    async def test_syncs_on_new_head(self, build):
        build.last_analyzed_commit_sha = "abc"
        sync = MagicMock()
        sync.execute = AsyncMock()
        client = _client([])
        client.fetch_last_commit = AsyncMock(return_value=_commit("def"))

        assert await AutoSyncBuildIfNeededUseCase(sync).execute(MagicMock(), build, client) is True
        sync.execute.assert_awaited_once()

    @pytest.mark.anyio
    async def test_no_commits(self, build):
        sync = MagicMock()
        sync.execute = AsyncMock()
        assert await AutoSyncBuildIfNeededUseCase(sync).execute(
            MagicMock(), build, _client([])
        ) is False

    @pytest.mark.anyio
    async def test_never_raises(self, build):
        sync = MagicMock()
        sync.execute = AsyncMock(side_effect=RuntimeError("boom"))
        client = _client([])
        client.fetch_last_commit = AsyncMock(return_value=_commit("new"))

        assert await AutoSyncBuildIfNeededUseCase(sync).execute(MagicMock(), build, client) is False


# ── TestBuildSyncRunner ───────────────────────────────────────────────────


@pytest.fixture
def runner(use_case, sync_status_service):
    return BuildSyncRunner(
        BuildService(BuildDAO()),
        TokenResolutionService(AccessTokenDAO()),
        sync_status_service,
        use_case,
    )


class TestBuildSyncRunner:
    @pytest.mark.anyio
    async def test_run_passes_resolved_token(self, session, build, runner):
        client = _client([_run(1)])
        factory = MagicMock(return_value=client)

        outcome = await runner.run(session, build, factory)

        assert outcome.error is None
        assert outcome.result.new_runs_synced == 1
        factory.assert_called_once_with(build, "ghp_inline")
        client.__aexit__.assert_awaited_once()

    @pytest.mark.anyio
    async def test_credential_failure_is_recorded(self, session, build, runner):
        build.personal_access_token = None
        factory = MagicMock()

        outcome = await runner.run(session, build, factory)

        assert outcome.result is None
        assert "access_token_id" in outcome.error
        factory.assert_not_called()
        assert (await _status(session, build)).last_sync_error == outcome.error

    @pytest.mark.anyio
    async def test_sync_failure_commits_error(self, session_factory, session, build, runner):
        await session.commit()
        client = _client([])
        client.fetch_workflow_runs = AsyncMock(side_effect=GitHubAPIError("rate limited", 403))

        outcome = await runner.run(session, build, MagicMock(return_value=client))

        assert outcome.error == "rate limited"
        async with session_factory() as fresh:
            assert (await _status(fresh, build)).last_sync_error == "rate limited"

    @pytest.mark.anyio
    async def test_run_all_isolates_failures(
        self, session_factory, session, build, tenant_id, runner, monkeypatch
    ):
        # one shared in-memory connection; keep builds sequential
        monkeypatch.setenv("ALPSCI_SYNC_CONCURRENCY", "1")
        other = Build(
            tenant_id=tenant_id,
            name="nightly",
            organization="acme",
            repository="gadgets",
            selectors=[],
            personal_access_token="ghp_other",
        )
        session.add(other)
        await session.commit()

        def factory(b, token):
            if b.repository == "gadgets":
                failing = _client([])
                failing.fetch_workflow_runs = AsyncMock(side_effect=GitHubAPIError("gone", 404))
                return failing
            return _client([_run(1), _run(2, minutes=1)])

        outcomes = await runner.run_all(session_factory, factory)

        by_build = {o.build_id: o for o in outcomes}
        assert by_build[build.id].result.new_runs_synced == 2
        assert by_build[other.id].error == "gone"
        async with session_factory() as fresh:
            assert await _count(fresh, WorkflowRunRecord) == 2

    @pytest.mark.anyio
    async def test_run_all_without_builds(self, session_factory, runner):
        assert await runner.run_all(session_factory, MagicMock()) == []
