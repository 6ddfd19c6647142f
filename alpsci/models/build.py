"""builds table."""

import uuid
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from alpsci.core.database import Base, JSONType, TimestampMixin


class Build(TimestampMixin, Base):
    __tablename__ = "builds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    organization: Mapped[str] = mapped_column(String(255), nullable=False)
    repository: Mapped[str] = mapped_column(String(255), nullable=False)
    # ordered list of {"type": "branch" | "tag" | "workflow", "pattern": str}
    selectors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # credential reference: exactly one of these is set
    personal_access_token: Mapped[Optional[str]] = mapped_column(Text)
    access_token_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("access_tokens.id", ondelete="SET NULL")
    )
    cache_expiration_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=30, server_default=text("30")
    )

    # repository metadata cache, keyed on the last analyzed commit
    last_analyzed_commit_sha: Mapped[Optional[str]] = mapped_column(String(64))
    tags: Mapped[Optional[list]] = mapped_column(JSONType)
    total_commits: Mapped[Optional[int]] = mapped_column(Integer)
    total_contributors: Mapped[Optional[int]] = mapped_column(Integer)
    cached_commits_last_7_days: Mapped[Optional[int]] = mapped_column(Integer)
    cached_contributors_last_7_days: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_builds_tenant_name"),
        Index("idx_builds_tenant", "tenant_id"),
        Index("idx_builds_repo", "organization", "repository"),
    )
