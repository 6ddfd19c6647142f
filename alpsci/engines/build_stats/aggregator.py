"""Build statistics — database aggregation plus SHA-keyed live metadata."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.engines.build_stats.dates import (
    day_key,
    last_n_days,
    utc_now,
    window_end,
    window_start,
)
from alpsci.engines.build_stats.models import BuildStats, DailySuccess, TestStats
from alpsci.engines.build_sync.models import WorkflowRun, record_to_run
from alpsci.models.build import Build
from alpsci.models.test_result import TestResultRecord
from alpsci.services.build_service import BuildService
from alpsci.services.test_result_service import TestResultService
from alpsci.services.workflow_run_service import WorkflowRunService

log = structlog.get_logger("alpsci.engine")

T = TypeVar("T")

RECENT_RUNS_LIMIT = 3
STATS_WINDOW_DAYS = 7
TAGS_LIMIT = 50


async def best_effort(operation: Callable[[], Awaitable[T]], fallback: T, name: str) -> T:
    """Await *operation*; on any error log it and return *fallback*."""
    try:
        return await operation()
    except Exception as exc:
        log.warning("stats.metadata_unavailable", operation=name, error=str(exc))
        return fallback


def health_percentage(successful: int, total: int) -> int:
    if total == 0:
        return 0
    return round(successful / total * 100)


def daily_successes(runs: list[WorkflowRun], now: datetime, days: int) -> list[DailySuccess]:
    """One entry per calendar day (UTC) of the window, oldest first."""
    buckets = {day_key(d): DailySuccess(date=day_key(d)) for d in last_n_days(days, now)}
    for run in runs:
        bucket = buckets.get(day_key(run.created_at))
        if bucket is None:
            continue
        if run.status == "success":
            bucket.success_count += 1
        elif run.status == "failure":
            bucket.failure_count += 1
    return list(buckets.values())


def to_test_stats(record: TestResultRecord | None) -> TestStats | None:
    if record is None:
        return None
    return TestStats(
        total_tests=record.total_tests,
        passed_tests=record.passed_tests,
        failed_tests=record.failed_tests,
        skipped_tests=record.skipped_tests,
    )


class FetchBuildStatsUseCase:
    """Produce a :class:`BuildStats` snapshot for one build.

    Live metadata (tags, commit and contributor counts) is cached on the
    build keyed by the repository's head commit: while the head SHA is
    unchanged the stored figures are reused without calling GitHub.
    """

    def __init__(
        self,
        workflow_run_service: WorkflowRunService,
        test_result_service: TestResultService,
        build_service: BuildService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._runs = workflow_run_service
        self._tests = test_result_service
        self._builds = build_service
        self._clock = clock

    async def execute(
        self, session: AsyncSession, build: Build, client: Any = None
    ) -> BuildStats:
        now = self._clock()
        start = window_start(STATS_WINDOW_DAYS, now)

        records = await self._runs.list_in_range(session, build, start)
        runs = [record_to_run(r) for r in records]
        runs.sort(key=lambda r: r.created_at, reverse=True)

        successful = sum(1 for r in runs if r.status == "success")
        failed = sum(1 for r in runs if r.status == "failure")
        latest_result = await self._tests.latest_for_build(session, build)

        stats = BuildStats(
            total_executions=len(runs),
            successful_executions=successful,
            failed_executions=failed,
            health_percentage=health_percentage(successful, len(runs)),
            last_7_days_successes=daily_successes(runs, now, STATS_WINDOW_DAYS),
            recent_runs=runs[:RECENT_RUNS_LIMIT],
            test_stats=to_test_stats(latest_result),
            last_fetched_at=now,
        )

        if client is not None:
            end = window_end(now)
            await self._apply_live_metadata(session, build, client, stats, start, end)
        return stats

    # ── live metadata ─────────────────────────────────────────────────────

    async def _apply_live_metadata(
        self,
        session: AsyncSession,
        build: Build,
        client: Any,
        stats: BuildStats,
        start: datetime,
        end: datetime,
    ) -> None:
        org, repo = build.organization, build.repository

        last_commit = await best_effort(
            lambda: client.fetch_last_commit(org, repo), None, "last_commit"
        )
        stats.last_commit = last_commit
        head_sha = last_commit.sha if last_commit is not None else None

        cache_hit = (
            head_sha is not None
            and head_sha == build.last_analyzed_commit_sha
            and build.tags is not None
            and build.total_commits is not None
            and build.total_contributors is not None
        )
        if cache_hit:
            log.debug("stats.cache_hit", build_id=str(build.id), sha=head_sha[:7])
            await self._apply_cached(session, build, client, stats, start, end)
            return

        log.info("stats.cache_miss", build_id=str(build.id), sha=head_sha)
        # None marks a failed call so partial results are never cached
        tags, total_commits, total_contributors, commits_7d, contributors_7d = (
            await asyncio.gather(
                best_effort(lambda: client.fetch_tags(org, repo, TAGS_LIMIT), None, "tags"),
                best_effort(lambda: client.fetch_commits(org, repo), None, "total_commits"),
                best_effort(
                    lambda: client.fetch_total_contributors(org, repo), None, "total_contributors"
                ),
                best_effort(
                    lambda: client.fetch_commits(org, repo, start, end), None, "commits_last_7_days"
                ),
                best_effort(
                    lambda: client.fetch_contributors(org, repo, start),
                    None,
                    "contributors_last_7_days",
                ),
            )
        )

        stats.last_tag = tags[0] if tags else None
        stats.total_commits = total_commits or 0
        stats.total_contributors = total_contributors or 0
        stats.commits_last_7_days = commits_7d or 0
        stats.contributors_last_7_days = contributors_7d or 0

        fresh = (tags, total_commits, total_contributors, commits_7d, contributors_7d)
        if head_sha is not None and all(value is not None for value in fresh):
            await self._builds.update_repo_cache(
                session,
                build,
                last_analyzed_commit_sha=head_sha,
                tags=tags,
                total_commits=total_commits,
                total_contributors=total_contributors,
                cached_commits_last_7_days=commits_7d,
                cached_contributors_last_7_days=contributors_7d,
            )

    async def _apply_cached(
        self,
        session: AsyncSession,
        build: Build,
        client: Any,
        stats: BuildStats,
        start: datetime,
        end: datetime,
    ) -> None:
        stats.last_tag = build.tags[0] if build.tags else None
        stats.total_commits = build.total_commits
        stats.total_contributors = build.total_contributors

        if (
            build.cached_commits_last_7_days is not None
            and build.cached_contributors_last_7_days is not None
        ):
            stats.commits_last_7_days = build.cached_commits_last_7_days
            stats.contributors_last_7_days = build.cached_contributors_last_7_days
            return

        # same head commit, but the 7-day figures were never stored
        org, repo = build.organization, build.repository
        commits_7d, contributors_7d = await asyncio.gather(
            best_effort(
                lambda: client.fetch_commits(org, repo, start, end), None, "commits_last_7_days"
            ),
            best_effort(
                lambda: client.fetch_contributors(org, repo, start),
                None,
                "contributors_last_7_days",
            ),
        )
        stats.commits_last_7_days = commits_7d or 0
        stats.contributors_last_7_days = contributors_7d or 0
        if commits_7d is not None and contributors_7d is not None:
            await self._builds.update_repo_cache(
                session,
                build,
                cached_commits_last_7_days=commits_7d,
                cached_contributors_last_7_days=contributors_7d,
            )
