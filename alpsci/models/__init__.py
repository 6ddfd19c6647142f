"""SQLAlchemy ORM models — one file per table."""

from alpsci.models.access_token import AccessToken
from alpsci.models.build import Build
from alpsci.models.build_sync_status import BuildSyncStatus
from alpsci.models.test_result import TestResultRecord
from alpsci.models.workflow_run import UNKNOWN_COMMIT_SHA, WorkflowRunRecord

__all__ = [
    "AccessToken",
    "Build",
    "BuildSyncStatus",
    "TestResultRecord",
    "WorkflowRunRecord",
    "UNKNOWN_COMMIT_SHA",
]
