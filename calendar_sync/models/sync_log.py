"""
Sync run log model.

One row per full or incremental pass, created when the pass starts and
finalized exactly once with its counters.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calendar_sync.models.base import BaseModel, as_utc, utcnow

FINAL_STATUSES = frozenset({"completed", "failed", "partial"})


class SyncRunLog(BaseModel):
    """
    Audit record of one sync pass.

    Lifecycle:
    1. started: row inserted at the beginning of the pass
    2. completed / partial / failed: set once by finalize()
    """

    __tablename__ = "calendar_sync_log"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    connection_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("calendar_connections.id"),
        nullable=True,
        doc="Connection for incremental passes; NULL for full runs"
    )

    sync_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="Type: 'full', 'incremental'"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="started",
        doc="Status: 'started', 'completed', 'partial', 'failed'"
    )

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    events_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_deleted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conflicts_detected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sync_log_user_started", "user_id", "started_at"),
        Index("ix_sync_log_status", "status"),
    )

    @property
    def is_finalized(self) -> bool:
        return self.status in FINAL_STATUSES

    def finalize(
        self,
        status: str,
        *,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        conflicts: int = 0,
        failed: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """
        Close the run with its final status and counters.

        Raises:
            ValueError: If the run is already finalized or status is not terminal
        """
        if self.is_finalized:
            raise ValueError(f"Sync run {self.id} already finalized as '{self.status}'")
        if status not in FINAL_STATUSES:
            raise ValueError(f"Invalid final status: {status}")

        now = utcnow()
        self.status = status
        self.completed_at = now
        self.events_created = created
        self.events_updated = updated
        self.events_deleted = deleted
        self.conflicts_detected = conflicts
        self.events_failed = failed
        self.error_message = error_message
        self.duration_ms = int((now - as_utc(self.started_at)).total_seconds() * 1000)

    def __repr__(self) -> str:
        return f"<SyncRunLog(type='{self.sync_type}', status='{self.status}')>"
