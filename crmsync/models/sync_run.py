"""SyncRun model tracking one bulk contact sync attempt."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from crmsync.database import Base


class SyncStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncPhase(StrEnum):
    CLAIMING = "claiming"
    DISCOVERING_IDS = "discovering_ids"
    STREAMING = "streaming"
    RETRYING = "retrying"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncRun(Base):
    """
    One row per sync attempt.

    Doubles as the checkpoint: last_processed_id is the resume point for a
    later run when this one fails or is interrupted.
    """

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    # 'vtiger_contacts'
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    phase: Mapped[str] = mapped_column(
        String(30), nullable=False, server_default=SyncPhase.CLAIMING.value
    )

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Counters
    total_expected: Mapped[int | None] = mapped_column(Integer)
    fetched_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    created_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    updated_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    failed_id_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    fetch_passes: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)

    # Resume bookkeeping
    last_processed_id: Mapped[str | None] = mapped_column(String(64))
    resumed_from_run_id: Mapped[int | None] = mapped_column(Integer)

    error_message: Mapped[str | None] = mapped_column(Text)

    # Operator tracking
    started_by: Mapped[str | None] = mapped_column(String(255))
    cancelled_by: Mapped[str | None] = mapped_column(String(255))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        # At most one running sync per type
        Index(
            "uq_sync_runs_one_running",
            "sync_type",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("idx_sync_runs_type_started", "sync_type", "started_at"),
    )

    @property
    def processed_count(self) -> int:
        return (self.created_count or 0) + (self.updated_count or 0)

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.sync_type}: {self.status}/{self.phase}>"
