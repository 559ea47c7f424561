"""
Sync conflict model.

Entities:
- SyncConflict: An event both sides edited since the last sync
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from calendar_sync.models.base import BaseModel, get_json_type, utcnow


class SyncConflict(BaseModel):
    """
    Records a divergence between the internal and external copy of an event.

    Conflict types:
    - time_change: both sides moved the event
    - content_change: both sides edited title/description
    - location_change: both sides edited only the location
    - deletion_conflict: one side deleted while the other modified
    - duplicate_event: the same event exists twice on the external side

    Resolution statuses:
    - pending: waiting on a user; the mapping's writes are blocked
    - resolved: a user picked a side
    - ignored: a user dismissed it
    - auto_resolved: the configured priority order picked a side
    """

    __tablename__ = "calendar_sync_conflicts"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    connection_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendar_connections.id"),
        nullable=False,
    )

    mapping_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendar_event_mappings.id"),
        nullable=False,
        doc="Mapping whose two sides diverged"
    )

    sync_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("calendar_sync_log.id"),
        nullable=True,
        doc="Run that detected (or last re-detected) the conflict"
    )

    conflict_type: Mapped[str] = mapped_column(String(30), nullable=False)

    internal_snapshot: Mapped[Optional[dict]] = mapped_column(get_json_type(), nullable=True)
    external_snapshot: Mapped[Optional[dict]] = mapped_column(get_json_type(), nullable=True)

    internal_changes: Mapped[list] = mapped_column(
        get_json_type(),
        nullable=False,
        default=list,
        doc="Fields changed on the internal side"
    )

    external_changes: Mapped[list] = mapped_column(
        get_json_type(),
        nullable=False,
        default=list,
        doc="Fields changed on the external side"
    )

    resolution_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        doc="Status: 'pending', 'resolved', 'ignored', 'auto_resolved'"
    )

    resolution_action: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        doc="Action taken: 'keep_internal', 'keep_external', 'merge'"
    )

    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sync_conflict_mapping_status", "mapping_id", "resolution_status"),
        Index("ix_sync_conflict_user_status", "user_id", "resolution_status"),
    )

    def __repr__(self) -> str:
        return f"<SyncConflict(type='{self.conflict_type}', status='{self.resolution_status}')>"
