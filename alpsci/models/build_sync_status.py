"""build_sync_status table — one sync checkpoint per build."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from alpsci.core.database import Base, TimestampMixin


class BuildSyncStatus(TimestampMixin, Base):
    __tablename__ = "build_sync_status"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_synced_run_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    last_synced_run_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    initial_backfill_completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    initial_backfill_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    total_runs_synced: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text)
