"""Data models for the build sync engine.

Provider-shaped values (``WorkflowRun``, ``Artifact``, ...) are immutable
and never touch the database; ``map_run_to_record`` is the single
conversion into the persisted ``WorkflowRunRecord`` shape.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from alpsci.core.database import as_utc
from alpsci.models.workflow_run import UNKNOWN_COMMIT_SHA, WorkflowRunRecord

RunStatus = Literal["success", "failure", "cancelled", "queued", "in_progress"]
SelectorType = Literal["branch", "tag", "workflow"]

PENDING_STATUSES = frozenset({"queued", "in_progress"})


@dataclass(frozen=True)
class Selector:
    type: SelectorType
    pattern: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Selector:
        return cls(type=data["type"], pattern=data["pattern"])


@dataclass(frozen=True)
class WorkflowRun:
    """A workflow run as returned by the provider."""

    id: int
    name: str
    status: RunStatus
    conclusion: str | None
    html_url: str
    created_at: datetime
    updated_at: datetime
    head_branch: str | None = None
    event: str | None = None
    duration: int | None = None  # milliseconds
    head_sha: str | None = None
    commit_message: str | None = None
    commit_author: str | None = None
    commit_date: datetime | None = None


@dataclass(frozen=True)
class Artifact:
    id: int
    name: str
    size_in_bytes: int = 0


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    message: str
    author: str
    date: datetime
    url: str


@dataclass(frozen=True)
class Contributor:
    login: str
    name: str | None
    avatar_url: str
    contributions: int
    profile_url: str


@dataclass
class SyncResult:
    """Summary of one sync pass."""

    new_runs_synced: int
    test_results_parsed: int
    last_synced_at: datetime


@dataclass
class SyncOutcome:
    """Per-build result of a batch sync; exactly one of result/error is set."""

    build_id: uuid.UUID
    result: SyncResult | None = None
    error: str | None = None


def map_run_to_record(run: WorkflowRun, synced_at: datetime) -> dict[str, Any]:
    """Project a provider run onto workflow_runs column values."""
    return {
        "github_run_id": run.id,
        "name": run.name,
        "status": run.status,
        "conclusion": run.conclusion,
        "html_url": run.html_url,
        "head_branch": run.head_branch,
        "event": run.event,
        "duration": run.duration,
        "commit_sha": run.head_sha or UNKNOWN_COMMIT_SHA,
        "commit_message": run.commit_message,
        "commit_author": run.commit_author,
        "commit_date": run.commit_date,
        "workflow_created_at": run.created_at,
        "workflow_updated_at": run.updated_at,
        "synced_at": synced_at,
    }


def record_to_run(record: WorkflowRunRecord) -> WorkflowRun:
    """Inverse of :func:`map_run_to_record` for display purposes."""
    return WorkflowRun(
        id=record.github_run_id,
        name=record.name,
        status=record.status,
        conclusion=record.conclusion,
        html_url=record.html_url,
        created_at=as_utc(record.workflow_created_at),
        updated_at=as_utc(record.workflow_updated_at),
        head_branch=record.head_branch,
        event=record.event,
        duration=record.duration,
        head_sha=None if record.commit_sha == UNKNOWN_COMMIT_SHA else record.commit_sha,
        commit_message=record.commit_message,
        commit_author=record.commit_author,
        commit_date=as_utc(record.commit_date),
    )
