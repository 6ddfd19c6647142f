"""Extended build statistics for the build details view."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import fields
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from alpsci.core.database import as_utc
from alpsci.engines.build_stats.aggregator import FetchBuildStatsUseCase, best_effort
from alpsci.engines.build_stats.dates import last_n_months, month_bounds, month_key, utc_now
from alpsci.engines.build_stats.models import (
    BuildDetailsStats,
    MonthlyBuildStats,
    MonthlyCommitStats,
    TestTrendPoint,
)
from alpsci.models.build import Build
from alpsci.models.workflow_run import WorkflowRunRecord
from alpsci.services.test_result_service import TestResultService
from alpsci.services.workflow_run_service import WorkflowRunService

MONTHS_WINDOW = 12
CONTRIBUTORS_LIMIT = 50


def monthly_build_stats(
    records: list[WorkflowRunRecord], months: list[tuple[int, int]]
) -> list[MonthlyBuildStats]:
    buckets = {
        f"{year:04d}-{month:02d}": MonthlyBuildStats(month=f"{year:04d}-{month:02d}")
        for year, month in months
    }
    for record in records:
        bucket = buckets.get(month_key(as_utc(record.workflow_created_at)))
        if bucket is None:
            continue
        bucket.total_count += 1
        if record.status == "success":
            bucket.success_count += 1
        elif record.status == "failure":
            bucket.failure_count += 1
    return list(buckets.values())


class FetchBuildDetailsStatsUseCase:
    """Base snapshot plus 12-month trends, test trend and contributors."""

    def __init__(
        self,
        stats_use_case: FetchBuildStatsUseCase,
        workflow_run_service: WorkflowRunService,
        test_result_service: TestResultService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._stats = stats_use_case
        self._runs = workflow_run_service
        self._tests = test_result_service
        self._clock = clock

    async def execute(
        self, session: AsyncSession, build: Build, client: Any = None
    ) -> BuildDetailsStats:
        base = await self._stats.execute(session, build, client)

        months = last_n_months(MONTHS_WINDOW, self._clock())
        start, _ = month_bounds(*months[0])

        records = await self._runs.list_in_range(session, build, start)
        pairs = await self._tests.list_with_runs(session, build)

        test_trend = [
            TestTrendPoint(
                date=as_utc(run.workflow_created_at),
                run_id=run.github_run_id,
                total_tests=result.total_tests,
                passed_tests=result.passed_tests,
                failed_tests=result.failed_tests,
                skipped_tests=result.skipped_tests,
            )
            for result, run in reversed(pairs)
            if as_utc(run.workflow_created_at) >= start
        ]

        if client is not None:
            monthly_commits = await self._monthly_commits(build, client, months)
            contributors = await best_effort(
                lambda: client.fetch_contributors_list(
                    build.organization, build.repository, CONTRIBUTORS_LIMIT
                ),
                [],
                "contributors_list",
            )
        else:
            monthly_commits = [
                MonthlyCommitStats(month=f"{y:04d}-{m:02d}") for y, m in months
            ]
            contributors = []

        return BuildDetailsStats(
            **{f.name: getattr(base, f.name) for f in fields(base)},
            monthly_stats=monthly_build_stats(records, months),
            monthly_commits=monthly_commits,
            test_trend=test_trend,
            contributors=contributors,
        )

    @staticmethod
    async def _monthly_commits(
        build: Build, client: Any, months: list[tuple[int, int]]
    ) -> list[MonthlyCommitStats]:
        org, repo = build.organization, build.repository

        async def _count(year: int, month: int) -> MonthlyCommitStats:
            since, until = month_bounds(year, month)
            key = f"{year:04d}-{month:02d}"
            count = await best_effort(
                lambda: client.fetch_commits(org, repo, since, until), 0, f"commits_{key}"
            )
            return MonthlyCommitStats(month=key, commit_count=count)

        return list(await asyncio.gather(*(_count(y, m) for y, m in months)))
