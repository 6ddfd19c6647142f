"""CLI entry point: alpsci.

Subcommands:
    alpsci sync ORG REPO           # Sync every build tracking ORG/REPO once
    alpsci stats ORG REPO          # Print the statistics snapshot of those builds
    alpsci serve                   # Run the API and the sync scheduler
    alpsci token add TENANT NAME   # Store a managed GitHub token (prompted)
    alpsci token list TENANT       # List managed tokens without secrets
"""

from __future__ import annotations

import asyncio
import sys
import uuid

import click
from dotenv import load_dotenv

from alpsci.api.schemas.stats import BuildStatsResponse, SyncResultResponse
from alpsci.core.cache import ReadThroughCache
from alpsci.core.database import create_session_factory
from alpsci.core.logging import setup_logging
from alpsci.dao.access_token_dao import AccessTokenDAO
from alpsci.dao.build_dao import BuildDAO
from alpsci.dao.build_sync_status_dao import BuildSyncStatusDAO
from alpsci.dao.test_result_dao import TestResultDAO
from alpsci.dao.workflow_run_dao import WorkflowRunDAO
from alpsci.engines.build_stats.aggregator import FetchBuildStatsUseCase
from alpsci.engines.build_sync.cached_client import CachedGitHubClient
from alpsci.engines.build_sync.github_client import GitHubClient
from alpsci.engines.build_sync.runner import BuildSyncRunner, SyncBuildHistoryUseCase
from alpsci.models.build import Build
from alpsci.services import ValidationError
from alpsci.services.build_service import BuildService
from alpsci.services.sync_status_service import SyncStatusService
from alpsci.services.test_result_service import TestResultService
from alpsci.services.token_service import AccessTokenService, TokenResolutionService
from alpsci.services.workflow_run_service import WorkflowRunService


class _Container:
    """Composition root for one CLI invocation."""

    def __init__(self) -> None:
        self.session_factory = create_session_factory()
        self.cache = ReadThroughCache()

        self.builds = BuildService(BuildDAO())
        self.tokens = TokenResolutionService(AccessTokenDAO())
        self.access_tokens = AccessTokenService(AccessTokenDAO())
        runs = WorkflowRunService(WorkflowRunDAO())
        tests = TestResultService(TestResultDAO())
        status = SyncStatusService(BuildSyncStatusDAO())

        self.sync_runner = BuildSyncRunner(
            self.builds, self.tokens, status, SyncBuildHistoryUseCase(runs, tests, status)
        )
        self.stats = FetchBuildStatsUseCase(runs, tests, self.builds)

    def client_for(self, build: Build, token: str) -> CachedGitHubClient:
        return CachedGitHubClient(GitHubClient(token), self.cache, build.cache_expiration_minutes)

    async def dispose(self) -> None:
        await self.session_factory.kw["bind"].dispose()


async def _find_builds(container: _Container, org: str, repo: str) -> list[Build]:
    async with container.session_factory() as session:
        return await container.builds.find_by_repository(session, org, repo)


async def _sync(org: str, repo: str) -> int:
    container = _Container()
    try:
        builds = await _find_builds(container, org, repo)
        if not builds:
            click.echo(f"No build tracks {org}/{repo}", err=True)
            return 1

        failed = 0
        for build in builds:
            async with container.session_factory() as session:
                outcome = await container.sync_runner.run(session, build, container.client_for)
            if outcome.error is not None:
                failed += 1
                click.echo(f"{build.name}: sync failed: {outcome.error}", err=True)
                continue
            result = SyncResultResponse.model_validate(outcome.result)
            click.echo(f"{build.name}: {result.model_dump_json()}")
        return 1 if failed else 0
    finally:
        await container.dispose()


async def _stats(org: str, repo: str) -> int:
    container = _Container()
    try:
        builds = await _find_builds(container, org, repo)
        if not builds:
            click.echo(f"No build tracks {org}/{repo}", err=True)
            return 1

        for build in builds:
            async with container.session_factory() as session:
                async with session.begin():
                    token = await container.tokens.resolve_token(session, build)
                    async with container.client_for(build, token) as client:
                        stats = await container.stats.execute(session, build, client)
            click.echo(f"# {build.name}")
            click.echo(BuildStatsResponse.model_validate(stats).model_dump_json(indent=2))
        return 0
    finally:
        await container.dispose()


async def _add_token(tenant_id: uuid.UUID, name: str, token: str, created_by: str) -> int:
    container = _Container()
    try:
        try:
            async with container.session_factory() as session:
                async with session.begin():
                    created = await container.access_tokens.create(
                        session, tenant_id, name, token, created_by
                    )
        except ValidationError as exc:
            click.echo(f"Cannot store token: {exc}", err=True)
            return 1
        click.echo(f"Stored token {created.name} ({created.id})")
        return 0
    finally:
        await container.dispose()


async def _list_tokens(tenant_id: uuid.UUID) -> int:
    container = _Container()
    try:
        async with container.session_factory() as session:
            tokens = await container.access_tokens.list(session, tenant_id)
        for t in tokens:
            last_used = t["last_used"].isoformat() if t["last_used"] else "never"
            click.echo(f"{t['id']}  {t['name']}  by {t['created_by']}  last used {last_used}")
        return 0
    finally:
        await container.dispose()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.option(
    "--log-format",
    type=click.Choice(["console", "plain", "json"]),
    default=None,
    help="Log renderer (default: $ALPSCI_LOG_FORMAT or console)",
)
def main(verbose: bool, log_format: str | None) -> None:
    """alpsci: CI build history sync and statistics."""
    load_dotenv()
    setup_logging("DEBUG" if verbose else None, log_format)


@main.command()
@click.argument("org")
@click.argument("repo")
def sync(org: str, repo: str) -> None:
    """Run one history sync for every build tracking ORG/REPO."""
    sys.exit(asyncio.run(_sync(org, repo)))


@main.command()
@click.argument("org")
@click.argument("repo")
def stats(org: str, repo: str) -> None:
    """Print the statistics snapshot for every build tracking ORG/REPO."""
    sys.exit(asyncio.run(_stats(org, repo)))


@main.group()
def token() -> None:
    """Manage encrypted GitHub access tokens."""


@token.command("add")
@click.argument("tenant_id", type=click.UUID)
@click.argument("name")
@click.option("--created-by", default="cli", show_default=True)
@click.password_option("--token", prompt="GitHub token", confirmation_prompt=False)
def token_add(tenant_id: uuid.UUID, name: str, created_by: str, token: str) -> None:
    """Store a managed token for TENANT_ID under NAME."""
    sys.exit(asyncio.run(_add_token(tenant_id, name, token, created_by)))


@token.command("list")
@click.argument("tenant_id", type=click.UUID)
def token_list(tenant_id: uuid.UUID) -> None:
    """List TENANT_ID's managed tokens (never the secrets)."""
    sys.exit(asyncio.run(_list_tokens(tenant_id)))


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Run the API server with the periodic sync scheduler."""
    import uvicorn

    uvicorn.run("alpsci.api:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
