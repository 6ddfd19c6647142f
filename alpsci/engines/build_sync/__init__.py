"""Build sync engine — GitHub workflow-run and test-report ingestion."""

from alpsci.engines.build_sync.cached_client import CachedGitHubClient
from alpsci.engines.build_sync.github_client import (
    GitHubAPIError,
    GitHubAuthenticationError,
    GitHubClient,
    RateLimitError,
)
from alpsci.engines.build_sync.junit import JUnitParseError, TestCounts, parse_junit
from alpsci.engines.build_sync.models import (
    Artifact,
    CommitInfo,
    Contributor,
    Selector,
    SyncOutcome,
    SyncResult,
    WorkflowRun,
)
from alpsci.engines.build_sync.runner import (
    AutoSyncBuildIfNeededUseCase,
    BuildSyncRunner,
    SyncBuildHistoryUseCase,
)
from alpsci.engines.build_sync.selector import matches

__all__ = [
    "Artifact",
    "AutoSyncBuildIfNeededUseCase",
    "BuildSyncRunner",
    "CachedGitHubClient",
    "CommitInfo",
    "Contributor",
    "GitHubAPIError",
    "GitHubAuthenticationError",
    "GitHubClient",
    "JUnitParseError",
    "RateLimitError",
    "Selector",
    "SyncBuildHistoryUseCase",
    "SyncOutcome",
    "SyncResult",
    "TestCounts",
    "WorkflowRun",
    "matches",
    "parse_junit",
]
