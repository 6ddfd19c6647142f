"""GitHubClient decorator backed by the process-wide read-through cache."""

from __future__ import annotations

import os
from datetime import datetime

from alpsci.core.cache import ReadThroughCache
from alpsci.engines.build_sync.github_client import GitHubClient
from alpsci.engines.build_sync.models import Artifact, CommitInfo, Contributor, WorkflowRun

DEFAULT_TTL_MINUTES = 30


def default_ttl_minutes() -> float:
    return float(os.environ.get("ALPSCI_CACHE_TTL_MINUTES", DEFAULT_TTL_MINUTES))


def _stamp(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


class CachedGitHubClient:
    """Same interface as :class:`GitHubClient`, with read-through caching.

    Cache keys are ``"{org}/{repo}/{suffix}"`` so one repository's data can
    be dropped with :meth:`invalidate_repository`. Artifact listing,
    artifact downloads and token validation are never cached.
    """

    def __init__(
        self,
        client: GitHubClient,
        cache: ReadThroughCache,
        ttl_minutes: float | None = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._ttl = ttl_minutes if ttl_minutes is not None else default_ttl_minutes()

    @staticmethod
    def _key(org: str, repo: str, suffix: str) -> str:
        return f"{org}/{repo}/{suffix}"

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> CachedGitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── cached ─────────────────────────────────────────────────────────────

    async def fetch_workflow_runs(
        self,
        org: str,
        repo: str,
        *,
        since: datetime | None = None,
        branch: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowRun]:
        key = self._key(org, repo, f"workflow-runs:{_stamp(since)}:{branch or '-'}:{limit or '-'}")
        return await self._cache.get(
            key,
            self._ttl,
            lambda: self._client.fetch_workflow_runs(
                org, repo, since=since, branch=branch, limit=limit
            ),
        )

    async def fetch_tags(self, org: str, repo: str, limit: int = 100) -> list[str]:
        return await self._cache.get(
            self._key(org, repo, f"tags:{limit}"),
            self._ttl,
            lambda: self._client.fetch_tags(org, repo, limit),
        )

    async def fetch_last_commit(self, org: str, repo: str) -> CommitInfo | None:
        return await self._cache.get(
            self._key(org, repo, "last-commit"),
            self._ttl,
            lambda: self._client.fetch_last_commit(org, repo),
        )

    async def fetch_commits(
        self,
        org: str,
        repo: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        return await self._cache.get(
            self._key(org, repo, f"commits:{_stamp(since)}:{_stamp(until)}"),
            self._ttl,
            lambda: self._client.fetch_commits(org, repo, since, until),
        )

    async def fetch_commits_with_dates(
        self,
        org: str,
        repo: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[datetime]:
        return await self._cache.get(
            self._key(org, repo, f"commit-dates:{_stamp(since)}:{_stamp(until)}"),
            self._ttl,
            lambda: self._client.fetch_commits_with_dates(org, repo, since, until),
        )

    async def fetch_contributors(self, org: str, repo: str, since: datetime | None = None) -> int:
        return await self._cache.get(
            self._key(org, repo, f"contributors:{_stamp(since)}"),
            self._ttl,
            lambda: self._client.fetch_contributors(org, repo, since),
        )

    async def fetch_total_contributors(self, org: str, repo: str) -> int:
        return await self._cache.get(
            self._key(org, repo, "total-contributors"),
            self._ttl,
            lambda: self._client.fetch_total_contributors(org, repo),
        )

    async def fetch_contributors_list(
        self, org: str, repo: str, limit: int = 50
    ) -> list[Contributor]:
        return await self._cache.get(
            self._key(org, repo, f"contributors-list:{limit}"),
            self._ttl,
            lambda: self._client.fetch_contributors_list(org, repo, limit),
        )

    # ── pass-through ───────────────────────────────────────────────────────

    async def fetch_artifacts(self, org: str, repo: str, run_id: int) -> list[Artifact]:
        return await self._client.fetch_artifacts(org, repo, run_id)

    async def download_artifact(self, org: str, repo: str, artifact_id: int) -> str | None:
        return await self._client.download_artifact(org, repo, artifact_id)

    async def validate_token(self) -> bool:
        return await self._client.validate_token()

    # ── invalidation ───────────────────────────────────────────────────────

    def invalidate_repository(self, org: str, repo: str) -> int:
        """Drop every cached entry for *org*/*repo*; return how many."""
        return self._cache.invalidate(f"{org}/{repo}/")

    def invalidate_all(self) -> None:
        self._cache.invalidate_all()
