"""Build statistics and sync response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class WorkflowRunSchema(_FromAttributes):
    id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    created_at: datetime
    updated_at: datetime | None
    head_branch: str | None
    event: str | None
    duration: int | None
    head_sha: str | None
    commit_message: str | None
    commit_author: str | None
    commit_date: datetime | None


class CommitInfoSchema(_FromAttributes):
    sha: str
    message: str
    author: str
    date: datetime | None
    url: str


class ContributorSchema(_FromAttributes):
    login: str
    name: str | None
    avatar_url: str | None
    contributions: int
    profile_url: str | None


class DailySuccessSchema(_FromAttributes):
    date: str
    success_count: int
    failure_count: int


class TestStatsSchema(_FromAttributes):
    __test__ = False

    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int


class BuildStatsResponse(_FromAttributes):
    total_executions: int
    successful_executions: int
    failed_executions: int
    health_percentage: int
    last_7_days_successes: list[DailySuccessSchema]
    recent_runs: list[WorkflowRunSchema]
    test_stats: TestStatsSchema | None
    last_fetched_at: datetime
    last_tag: str | None
    commits_last_7_days: int
    contributors_last_7_days: int
    total_commits: int
    total_contributors: int
    last_commit: CommitInfoSchema | None


class MonthlyBuildStatsSchema(_FromAttributes):
    month: str
    success_count: int
    failure_count: int
    total_count: int


class MonthlyCommitStatsSchema(_FromAttributes):
    month: str
    commit_count: int


class TestTrendPointSchema(_FromAttributes):
    __test__ = False

    date: datetime
    run_id: int
    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int


class BuildDetailsResponse(BuildStatsResponse):
    monthly_stats: list[MonthlyBuildStatsSchema]
    monthly_commits: list[MonthlyCommitStatsSchema]
    test_trend: list[TestTrendPointSchema]
    contributors: list[ContributorSchema]


class SyncResultResponse(_FromAttributes):
    new_runs_synced: int
    test_results_parsed: int
    last_synced_at: datetime
