"""Data models for the build statistics engine. Derived, never persisted."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from alpsci.engines.build_sync.models import CommitInfo, Contributor, WorkflowRun


@dataclass
class DailySuccess:
    date: str  # YYYY-MM-DD, UTC
    success_count: int = 0
    failure_count: int = 0


@dataclass
class TestStats:
    __test__ = False

    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int


@dataclass
class BuildStats:
    """Point-in-time health snapshot of one build.

    Run counts cover the trailing 7-day window. Live repository metadata
    stays at its defaults when no client was supplied or GitHub failed.
    """

    total_executions: int
    successful_executions: int
    failed_executions: int
    health_percentage: int
    last_7_days_successes: list[DailySuccess]
    recent_runs: list[WorkflowRun]
    test_stats: TestStats | None
    last_fetched_at: datetime
    last_tag: str | None = None
    commits_last_7_days: int = 0
    contributors_last_7_days: int = 0
    total_commits: int = 0
    total_contributors: int = 0
    last_commit: CommitInfo | None = None


@dataclass
class MonthlyBuildStats:
    month: str  # YYYY-MM, UTC
    success_count: int = 0
    failure_count: int = 0
    total_count: int = 0


@dataclass
class MonthlyCommitStats:
    month: str
    commit_count: int = 0


@dataclass
class TestTrendPoint:
    __test__ = False

    date: datetime
    run_id: int
    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int


@dataclass
class BuildDetailsStats(BuildStats):
    monthly_stats: list[MonthlyBuildStats] = field(default_factory=list)
    monthly_commits: list[MonthlyCommitStats] = field(default_factory=list)
    test_trend: list[TestTrendPoint] = field(default_factory=list)
    contributors: list[Contributor] = field(default_factory=list)
