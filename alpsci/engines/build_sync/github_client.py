"""Async GitHub REST client with pagination, rate-limit handling, and retries."""

from __future__ import annotations

import asyncio
import io
import os
import re
import time
import zipfile
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from alpsci.engines.build_sync.models import (
    Artifact,
    CommitInfo,
    Contributor,
    RunStatus,
    WorkflowRun,
)
from alpsci.services import AuthenticationError, TransportError

log = structlog.get_logger("alpsci.engine")

DEFAULT_API_URL = "https://api.github.com"

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')
_LAST_PAGE_RE = re.compile(r'[?&]page=(\d+)[^>]*>;\s*rel="last"')

_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds
_PER_PAGE = 100
_MAX_RUN_PAGES = 10  # full-history listing stops after 1000 runs
_MAX_COMMIT_PAGES = 10
_MAX_CONTRIBUTOR_PAGES = 50

_CONCLUSION_STATUS: dict[str, RunStatus] = {
    "success": "success",
    "failure": "failure",
    "timed_out": "failure",
    "action_required": "failure",
    "cancelled": "cancelled",
    "skipped": "cancelled",
}
_PENDING_STATUS: dict[str, RunStatus] = {
    "queued": "queued",
    "pending": "queued",
    "waiting": "queued",
    "in_progress": "in_progress",
    "requested": "in_progress",
}


class GitHubAuthenticationError(AuthenticationError):
    """The token was rejected (HTTP 401): invalid, expired, or revoked."""


class GitHubAPIError(TransportError):
    """Any other failed GitHub request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(Exception):
    """Raised when GitHub rate limit is exhausted and we need to wait."""

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"rate limit exceeded, retry after {retry_after}s")


def map_status(status: str | None, conclusion: str | None) -> RunStatus:
    """Collapse GitHub's status/conclusion pair into one run status."""
    if status == "completed" and conclusion:
        return _CONCLUSION_STATUS.get(conclusion, "failure")
    return _PENDING_STATUS.get(status or "", "failure")


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubClient:
    """Thin async wrapper around the GitHub REST API for one credential."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "alpsci",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or os.environ.get("GITHUB_API_URL", DEFAULT_API_URL),
            headers=headers,
            timeout=timeout,
            follow_redirects=True,  # artifact downloads redirect to blob storage
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── workflow runs & artifacts ──────────────────────────────────────────

    async def fetch_workflow_runs(
        self,
        org: str,
        repo: str,
        *,
        since: datetime | None = None,
        branch: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowRun]:
        """Return workflow runs newest first.

        Without *limit* the listing pages through full history (bounded by
        ``_MAX_RUN_PAGES``). *since* filters on run creation time.
        """
        params: dict[str, Any] = {"per_page": min(limit or _PER_PAGE, _PER_PAGE)}
        if branch:
            params["branch"] = branch
        if since is not None:
            params["created"] = f">={_iso(since)}"
        max_pages = -(-limit // _PER_PAGE) if limit else _MAX_RUN_PAGES

        runs: list[WorkflowRun] = []
        async for item in self.get_paginated(
            f"/repos/{org}/{repo}/actions/runs",
            params,
            max_pages=max_pages,
            items_key="workflow_runs",
        ):
            run = self._map_run(item)
            if since is not None and run.created_at < since:
                continue
            runs.append(run)

        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit] if limit else runs

    async def fetch_artifacts(self, org: str, repo: str, run_id: int) -> list[Artifact]:
        data = await self.get(f"/repos/{org}/{repo}/actions/runs/{run_id}/artifacts")
        return [
            Artifact(id=a["id"], name=a["name"], size_in_bytes=a.get("size_in_bytes") or 0)
            for a in data.get("artifacts") or []
        ]

    async def download_artifact(self, org: str, repo: str, artifact_id: int) -> str | None:
        """Return the first ``.xml`` member of the artifact archive as text.

        ``None`` when the artifact has expired (HTTP 410) or the archive
        holds no XML file.
        """
        resp = await self._request_with_retry(
            f"/repos/{org}/{repo}/actions/artifacts/{artifact_id}/zip",
            allowed_statuses=frozenset({410}),
        )
        if resp.status_code == 410:
            log.info("github.artifact_expired", repo=f"{org}/{repo}", artifact_id=artifact_id)
            return None

        try:
            with zipfile.ZipFile(io.BytesIO(resp.content)) as archive:
                for member in archive.infolist():
                    if not member.is_dir() and member.filename.lower().endswith(".xml"):
                        return archive.read(member).decode("utf-8", errors="replace")
        except zipfile.BadZipFile:
            log.warning("github.artifact_bad_zip", repo=f"{org}/{repo}", artifact_id=artifact_id)
            return None

        log.warning("github.artifact_no_xml", repo=f"{org}/{repo}", artifact_id=artifact_id)
        return None

    # ── repository metadata ────────────────────────────────────────────────

    async def fetch_tags(self, org: str, repo: str, limit: int = 100) -> list[str]:
        """Tag names in the order the API lists them, at most *limit*."""
        names: list[str] = []
        async for item in self.get_paginated(
            f"/repos/{org}/{repo}/tags",
            {"per_page": min(limit, _PER_PAGE)},
            max_pages=-(-limit // _PER_PAGE),
        ):
            names.append(item["name"])
            if len(names) >= limit:
                break
        return names

    async def fetch_last_commit(self, org: str, repo: str) -> CommitInfo | None:
        resp = await self._request_with_retry(f"/repos/{org}/{repo}/commits", {"per_page": 1})
        commits = resp.json()
        if not isinstance(commits, list) or not commits:
            return None
        head = commits[0]
        author = head["commit"].get("author") or {}
        return CommitInfo(
            sha=head["sha"],
            message=head["commit"].get("message", ""),
            author=author.get("name", ""),
            date=_parse_datetime(author.get("date")),
            url=head.get("html_url", ""),
        )

    async def fetch_commits(
        self,
        org: str,
        repo: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        """Count commits in the window using the ``rel="last"`` page at one per page."""
        params: dict[str, Any] = {"per_page": 1}
        if since is not None:
            params["since"] = _iso(since)
        if until is not None:
            params["until"] = _iso(until)
        resp = await self._request_with_retry(f"/repos/{org}/{repo}/commits", params)

        last_page = self._parse_last_page(resp.headers.get("Link", ""))
        if last_page is not None:
            return last_page
        commits = resp.json()
        return len(commits) if isinstance(commits, list) else 0

    async def fetch_commits_with_dates(
        self,
        org: str,
        repo: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[datetime]:
        params: dict[str, Any] = {}
        if since is not None:
            params["since"] = _iso(since)
        if until is not None:
            params["until"] = _iso(until)
        dates: list[datetime] = []
        async for item in self.get_paginated(
            f"/repos/{org}/{repo}/commits", params, max_pages=_MAX_COMMIT_PAGES
        ):
            date = _parse_datetime((item.get("commit", {}).get("author") or {}).get("date"))
            if date is not None:
                dates.append(date)
        return dates

    async def fetch_contributors(self, org: str, repo: str, since: datetime | None = None) -> int:
        """Number of distinct commit authors (by login) since *since*."""
        params: dict[str, Any] = {}
        if since is not None:
            params["since"] = _iso(since)
        logins: set[str] = set()
        async for item in self.get_paginated(
            f"/repos/{org}/{repo}/commits", params, max_pages=_MAX_COMMIT_PAGES
        ):
            login = (item.get("author") or {}).get("login")
            if login:
                logins.add(login)
        return len(logins)

    async def fetch_total_contributors(self, org: str, repo: str) -> int:
        """All-time contributor count, anonymous contributors included."""
        total = 0
        async for _ in self.get_paginated(
            f"/repos/{org}/{repo}/contributors",
            {"anon": 1},
            max_pages=_MAX_CONTRIBUTOR_PAGES,
        ):
            total += 1
        return total

    async def fetch_contributors_list(
        self, org: str, repo: str, limit: int = 50
    ) -> list[Contributor]:
        data = await self._get_json(
            f"/repos/{org}/{repo}/contributors", {"per_page": min(limit, _PER_PAGE)}
        )
        contributors = []
        for item in data if isinstance(data, list) else []:
            if not item.get("login"):
                continue
            contributors.append(
                Contributor(
                    login=item["login"],
                    name=item.get("name"),
                    avatar_url=item.get("avatar_url", ""),
                    contributions=item.get("contributions", 0),
                    profile_url=item.get("html_url", ""),
                )
            )
        return contributors[:limit]

    async def validate_token(self) -> bool:
        """True if the token authenticates, False if GitHub rejects it."""
        try:
            await self._request_with_retry("/user")
        except GitHubAuthenticationError:
            return False
        return True

    # ── generic ────────────────────────────────────────────────────────────

    async def get_paginated(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        max_pages: int = 10,
        items_key: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield JSON items from a paginated GitHub API endpoint.

        Automatically follows ``Link: <...>; rel="next"`` headers and
        respects rate-limit headers. Stops after *max_pages* pages. Set
        *items_key* for endpoints that wrap the list in an object.
        """
        url: str | None = path
        params = dict(params or {})
        params.setdefault("per_page", _PER_PAGE)
        page = 0

        while url and page < max_pages:
            response = await self._request_with_retry(url, params if page == 0 else None)

            data = response.json()
            if items_key is not None:
                data = data.get(items_key) or []
            if isinstance(data, list):
                for item in data:
                    yield item
            else:
                yield data

            url = self._parse_next_link(response.headers.get("Link", ""))
            page += 1

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Single-resource GET, returns parsed JSON."""
        return await self._get_json(path, params)

    # ── internal ───────────────────────────────────────────────────────────

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request_with_retry(path, params)
        return response.json()

    async def _request_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        allowed_statuses: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        """GET with exponential backoff on 5xx, rate limits, and timeouts.

        Raises :class:`GitHubAuthenticationError` on 401 and
        :class:`GitHubAPIError` for every other failure once retries are
        exhausted. Statuses in *allowed_statuses* are returned as-is.
        """
        last_exc: Exception | None = None
        last_status: int | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.get(url, params=params)

                if resp.status_code == 401:
                    raise GitHubAuthenticationError("Invalid or expired GitHub access token")

                # 403/429 with rate-limit headers → sleep and retry
                if resp.status_code in (403, 429) and self._is_rate_limited(resp):
                    wait = self._get_rate_limit_wait(resp)
                    log.warning(
                        "github.rate_limit",
                        url=url,
                        wait_seconds=wait,
                        attempt=attempt + 1,
                        max_retries=_MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    last_exc = RateLimitError(wait)
                    last_status = resp.status_code
                    continue

                if resp.status_code in allowed_statuses or resp.is_success:
                    await self._check_rate_limit(resp)
                    return resp

                if resp.status_code < 500:
                    raise GitHubAPIError(
                        f"GitHub API request failed: {resp.status_code} {resp.reason_phrase}",
                        resp.status_code,
                    )

                # 5xx: retry
                log.warning(
                    "github.server_error",
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
                last_exc = httpx.HTTPStatusError(
                    f"{resp.status_code}", request=resp.request, response=resp
                )
                last_status = resp.status_code
            except httpx.TimeoutException as exc:
                log.warning(
                    "github.timeout",
                    url=url,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
                last_exc = exc
                last_status = None
            except httpx.TransportError as exc:
                raise GitHubAPIError(f"GitHub API transport error: {exc}") from exc

            if attempt < _MAX_RETRIES - 1:
                delay = _RETRY_BASE_DELAY * (2**attempt)
                await asyncio.sleep(delay)

        raise GitHubAPIError(
            f"GitHub API request failed after {_MAX_RETRIES} attempts: {last_exc}",
            last_status,
        ) from last_exc

    async def _check_rate_limit(self, response: httpx.Response) -> None:
        """Sleep until rate-limit resets if remaining == 0."""
        remaining = self._parse_header_int(response.headers.get("X-RateLimit-Remaining"))
        if remaining is not None and remaining == 0:
            wait = self._get_rate_limit_wait(response)
            log.warning("github.rate_limit_wait", wait_seconds=wait)
            await asyncio.sleep(wait)

    @staticmethod
    def _map_run(run: dict[str, Any]) -> WorkflowRun:
        created_at = _parse_datetime(run["created_at"])
        updated_at = _parse_datetime(run.get("updated_at")) or created_at
        started_at = _parse_datetime(run.get("run_started_at"))

        duration = None
        if started_at is not None and run.get("conclusion"):
            duration = int((updated_at - started_at).total_seconds() * 1000)

        head_commit = run.get("head_commit") or {}
        return WorkflowRun(
            id=run["id"],
            name=run.get("name") or run.get("display_title") or "Workflow Run",
            status=map_status(run.get("status"), run.get("conclusion")),
            conclusion=run.get("conclusion"),
            html_url=run.get("html_url", ""),
            created_at=created_at,
            updated_at=updated_at,
            head_branch=run.get("head_branch"),
            event=run.get("event"),
            duration=duration,
            head_sha=run.get("head_sha"),
            commit_message=head_commit.get("message"),
            commit_author=(head_commit.get("author") or {}).get("name"),
            commit_date=_parse_datetime(head_commit.get("timestamp")),
        )

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        """Check if a 403/429 response is due to rate limiting."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                return int(remaining) == 0
            except (ValueError, TypeError):
                pass
        # GitHub also uses Retry-After header for secondary rate limits
        return "Retry-After" in response.headers

    @staticmethod
    def _get_rate_limit_wait(response: httpx.Response) -> int:
        """Calculate how long to wait based on rate-limit headers."""
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return max(int(retry_after), 1)
            except (ValueError, TypeError):
                pass
        reset_ts = response.headers.get("X-RateLimit-Reset")
        if reset_ts is not None:
            try:
                return max(int(reset_ts) - int(time.time()), 1)
            except (ValueError, TypeError):
                pass
        return 60  # conservative fallback

    @staticmethod
    def _parse_header_int(value: str | None) -> int | None:
        """Safely parse an integer header value."""
        if value is None:
            return None
        try:
            return int(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        """Extract the ``next`` URL from a GitHub ``Link`` header."""
        match = _NEXT_LINK_RE.search(link_header)
        return match.group(1) if match else None

    @staticmethod
    def _parse_last_page(link_header: str) -> int | None:
        """Extract the page number of the ``last`` link, if any."""
        match = _LAST_PAGE_RE.search(link_header)
        return int(match.group(1)) if match else None
