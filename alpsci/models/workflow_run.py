"""workflow_runs table."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    desc,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from alpsci.core.database import Base, TimestampMixin

UNKNOWN_COMMIT_SHA = "unknown"


class WorkflowRunRecord(TimestampMixin, Base):
    __tablename__ = "workflow_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False
    )
    github_run_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    conclusion: Mapped[Optional[str]] = mapped_column(String(30))
    html_url: Mapped[str] = mapped_column(Text, nullable=False)
    head_branch: Mapped[Optional[str]] = mapped_column(Text)
    event: Mapped[Optional[str]] = mapped_column(String(50))
    duration: Mapped[Optional[int]] = mapped_column(BigInteger)  # milliseconds

    commit_sha: Mapped[str] = mapped_column(
        String(64), nullable=False, default=UNKNOWN_COMMIT_SHA, server_default=text("'unknown'")
    )
    commit_message: Mapped[Optional[str]] = mapped_column(Text)
    commit_author: Mapped[Optional[str]] = mapped_column(Text)
    commit_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    workflow_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    workflow_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("build_id", "github_run_id", name="uq_workflow_runs_build_run"),
        Index("idx_workflow_runs_build_created", "build_id", desc("workflow_created_at")),
        Index("idx_workflow_runs_tenant", "tenant_id"),
    )
