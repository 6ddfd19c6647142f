"""Build history sync — pure engine pieces + Service-layer DB writes."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alpsci.core.database import as_utc
from alpsci.core.logging import bound_build
from alpsci.engines.build_sync.junit import (
    JUnitParseError,
    TestCounts,
    is_test_artifact,
    parse_junit,
    parse_test_cases,
)
from alpsci.engines.build_sync.models import (
    PENDING_STATUSES,
    Selector,
    SyncOutcome,
    SyncResult,
    WorkflowRun,
    map_run_to_record,
)
from alpsci.engines.build_sync.selector import matches, needs_tags
from alpsci.models.build import Build
from alpsci.models.build_sync_status import BuildSyncStatus
from alpsci.models.workflow_run import WorkflowRunRecord
from alpsci.services.build_service import BuildService
from alpsci.services.sync_status_service import SyncStatusService
from alpsci.services.test_result_service import TestResultService
from alpsci.services.token_service import TokenResolutionService
from alpsci.services.workflow_run_service import WorkflowRunService

log = structlog.get_logger("alpsci.engine")

# Only the newest runs of a batch get their artifacts fetched.
ARTIFACT_FETCH_LIMIT = 50
TAG_FETCH_LIMIT = 100
INCREMENTAL_RUN_LIMIT = 100
INCREMENTAL_FALLBACK_DAYS = 30

_DEFAULT_ARTIFACT_CONCURRENCY = 5
_DEFAULT_SYNC_CONCURRENCY = 3


@dataclass
class ParsedReport:
    """A test report downloaded and parsed for one run, not yet persisted."""

    run: WorkflowRunRecord
    artifact_name: str
    artifact_url: str
    counts: TestCounts
    test_cases: list[dict[str, Any]] = field(default_factory=list)


def fetch_window(
    status: BuildSyncStatus, now: datetime
) -> tuple[datetime | None, int | None]:
    """(since, limit) for the workflow-run listing.

    Full history until the initial backfill completes; afterwards runs
    since the last synced run (or the last 30 days), capped.
    """
    if not status.initial_backfill_completed:
        return None, None
    since = as_utc(status.last_synced_run_created_at)
    if since is None:
        since = (now - timedelta(days=INCREMENTAL_FALLBACK_DAYS)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
    return since, INCREMENTAL_RUN_LIMIT


def _artifact_concurrency() -> int:
    return int(os.environ.get("ALPSCI_ARTIFACT_CONCURRENCY", _DEFAULT_ARTIFACT_CONCURRENCY))


class SyncBuildHistoryUseCase:
    """Bring one build's persisted run and test history up to date."""

    def __init__(
        self,
        workflow_run_service: WorkflowRunService,
        test_result_service: TestResultService,
        sync_status_service: SyncStatusService,
    ) -> None:
        self._runs = workflow_run_service
        self._tests = test_result_service
        self._status = sync_status_service

    async def execute(self, session: AsyncSession, build: Build, client: Any) -> SyncResult:
        """Sync *build* using *client* (a GitHubClient or its cached wrapper).

        Per-run artifact failures are logged and skipped. Any other failure
        is recorded as ``last_sync_error`` on the checkpoint and re-raised;
        the caller decides whether to commit that record and when to retry.
        """
        try:
            return await self._execute(session, build, client)
        except Exception as exc:
            log.error("sync.failed", build_id=str(build.id), error=str(exc))
            try:
                await self._status.record_error(session, build, str(exc) or type(exc).__name__)
            except Exception:
                log.warning("sync.status_update_failed", build_id=str(build.id))
            raise

    async def _execute(self, session: AsyncSession, build: Build, client: Any) -> SyncResult:
        org, repo = build.organization, build.repository
        status = await self._status.get_or_create(session, build)
        previous_total = status.total_runs_synced or 0
        backfill_done = status.initial_backfill_completed

        now = datetime.now(timezone.utc)
        since, limit = fetch_window(status, now)

        selectors = [Selector.from_dict(s) for s in build.selectors or []]
        tag_names: list[str] = []
        if needs_tags(selectors):
            tag_names = await client.fetch_tags(org, repo, TAG_FETCH_LIMIT)

        fetched: list[WorkflowRun] = await client.fetch_workflow_runs(
            org, repo, since=since, limit=limit
        )
        runs = [run for run in fetched if matches(run, selectors, tag_names)]

        existing = await self._runs.find_existing(session, build, [run.id for run in runs])
        synced_at = datetime.now(timezone.utc)
        records = [map_run_to_record(run, synced_at) for run in runs]
        persisted = await self._runs.bulk_upsert(session, build, records)

        log.info(
            "sync.runs_upserted",
            build_id=str(build.id),
            fetched=len(fetched),
            matched=len(runs),
            new=len(runs) - len(existing),
            updated=len(existing),
            since=since.isoformat() if since else None,
        )

        parsed = await self._sync_test_results(session, build, client, persisted)

        finished_at = datetime.now(timezone.utc)
        await self._status.record_success(
            session,
            build,
            previous_total=previous_total,
            runs_synced=len(persisted),
            synced_at=finished_at,
            latest_run=persisted[0] if persisted else None,
        )
        if not backfill_done:
            await self._status.mark_backfill_complete(session, build)

        log.info(
            "sync.completed",
            build_id=str(build.id),
            new_runs=len(persisted),
            test_results=parsed,
        )
        return SyncResult(
            new_runs_synced=len(persisted),
            test_results_parsed=parsed,
            last_synced_at=finished_at,
        )

    # ── test results ──────────────────────────────────────────────────────

    async def _sync_test_results(
        self,
        session: AsyncSession,
        build: Build,
        client: Any,
        persisted: list[WorkflowRunRecord],
    ) -> int:
        """Fetch, parse and store test reports for the newest finished runs."""
        eligible = [
            run
            for run in persisted[:ARTIFACT_FETCH_LIMIT]
            if run.status not in PENDING_STATUSES
        ]
        if not eligible:
            return 0

        have = await self._tests.existing_run_ids(session, build, [run.id for run in eligible])
        todo = [run for run in eligible if run.id not in have]
        if not todo:
            return 0

        # network + parsing fan out; the session is only touched afterwards
        sem = asyncio.Semaphore(_artifact_concurrency())

        async def _one(run: WorkflowRunRecord) -> ParsedReport | None:
            async with sem:
                try:
                    return await self._fetch_report(client, build, run)
                except Exception as exc:
                    log.warning(
                        "sync.artifact_failed",
                        build_id=str(build.id),
                        run_id=run.github_run_id,
                        error=str(exc),
                    )
                    return None

        reports = await asyncio.gather(*(_one(run) for run in todo))

        created = 0
        for report in reports:
            if report is None:
                continue
            await self._tests.create(
                session,
                report.run,
                total=report.counts.total,
                passed=report.counts.passed,
                failed=report.counts.failed,
                skipped=report.counts.skipped,
                test_cases=report.test_cases,
                artifact_name=report.artifact_name,
                artifact_url=report.artifact_url,
            )
            created += 1
        return created

    async def _fetch_report(
        self, client: Any, build: Build, run: WorkflowRunRecord
    ) -> ParsedReport | None:
        """Try each test-report artifact of *run* until one parses."""
        org, repo = build.organization, build.repository
        artifacts = await client.fetch_artifacts(org, repo, run.github_run_id)

        for artifact in (a for a in artifacts if is_test_artifact(a.name)):
            try:
                content = await client.download_artifact(org, repo, artifact.id)
                if not content:
                    continue
                counts = parse_junit(content)
            except JUnitParseError as exc:
                log.warning(
                    "sync.junit_unparseable",
                    run_id=run.github_run_id,
                    artifact=artifact.name,
                    error=str(exc),
                )
                continue
            if counts.total == 0:
                continue
            return ParsedReport(
                run=run,
                artifact_name=artifact.name,
                artifact_url=(
                    f"https://github.com/{org}/{repo}/actions/runs/"
                    f"{run.github_run_id}/artifacts/{artifact.id}"
                ),
                counts=counts,
                test_cases=parse_test_cases(content),
            )
        return None


class AutoSyncBuildIfNeededUseCase:
    """Sync a build only when its repository has a new head commit."""

    def __init__(self, sync_use_case: SyncBuildHistoryUseCase) -> None:
        self._sync = sync_use_case

    async def execute(self, session: AsyncSession, build: Build, client: Any) -> bool:
        """Return True if a sync ran. Never raises; failures report False."""
        try:
            last_commit = await client.fetch_last_commit(build.organization, build.repository)
            if last_commit is None:
                log.info("sync.auto_no_commits", build_id=str(build.id))
                return False
            if last_commit.sha == build.last_analyzed_commit_sha:
                log.debug("sync.auto_up_to_date", build_id=str(build.id), sha=last_commit.sha[:7])
                return False

            log.info(
                "sync.auto_new_commit",
                build_id=str(build.id),
                previous=(build.last_analyzed_commit_sha or "none")[:7],
                current=last_commit.sha[:7],
            )
            await self._sync.execute(session, build, client)
            return True
        except Exception as exc:
            log.error("sync.auto_failed", build_id=str(build.id), error=str(exc))
            return False


ClientFactory = Callable[[Build, str], Any]


class BuildSyncRunner:
    """Orchestration layer: credential resolution → sync → commit, per build."""

    def __init__(
        self,
        build_service: BuildService,
        token_service: TokenResolutionService,
        sync_status_service: SyncStatusService,
        sync_use_case: SyncBuildHistoryUseCase,
    ) -> None:
        self._build_service = build_service
        self._token_service = token_service
        self._status = sync_status_service
        self._sync = sync_use_case

    async def run(
        self,
        session: AsyncSession,
        build: Build,
        client_factory: ClientFactory,
    ) -> SyncOutcome:
        """Sync one build; the outcome carries either a result or an error.

        The session is committed in both cases so a recorded
        ``last_sync_error`` survives a failed pass.
        """
        try:
            token = await self._token_service.resolve_token(session, build)
        except Exception as exc:
            log.error("sync.credential_failed", build_id=str(build.id), error=str(exc))
            await self._status.record_error(session, build, str(exc))
            await session.commit()
            return SyncOutcome(build_id=build.id, error=str(exc))

        try:
            async with client_factory(build, token) as client:
                result = await self._sync.execute(session, build, client)
        except Exception as exc:
            await self._commit_quietly(session, build)
            return SyncOutcome(build_id=build.id, error=str(exc))

        await session.commit()
        return SyncOutcome(build_id=build.id, result=result)

    async def run_all(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: ClientFactory,
    ) -> list[SyncOutcome]:
        """Sync every build with bounded concurrency, one session per build."""
        async with session_factory() as session:
            builds = await self._build_service.list_all(session)

        if not builds:
            return []

        sem = asyncio.Semaphore(
            int(os.environ.get("ALPSCI_SYNC_CONCURRENCY", _DEFAULT_SYNC_CONCURRENCY))
        )

        async def _run_one(build: Build) -> SyncOutcome:
            async with sem:
                with bound_build(build):
                    try:
                        async with session_factory() as session:
                            return await self.run(session, build, client_factory)
                    except Exception as exc:
                        log.error("sync.failed", error=str(exc))
                        return SyncOutcome(build_id=build.id, error=str(exc))

        outcomes = list(await asyncio.gather(*(_run_one(b) for b in builds)))
        failed = sum(1 for o in outcomes if o.error)
        log.info("sync.batch_completed", builds=len(outcomes), failed=failed)
        return outcomes

    @staticmethod
    async def _commit_quietly(session: AsyncSession, build: Build) -> None:
        try:
            await session.commit()
        except Exception:
            log.warning("sync.status_update_failed", build_id=str(build.id))
            await session.rollback()
