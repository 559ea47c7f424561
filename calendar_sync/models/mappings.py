"""
Event mapping model.

Links an event in one source system to its copy in the external calendar
and records the fingerprints both sides had at the last agreed sync.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from calendar_sync.models.base import BaseModel, get_json_type


class EventMapping(BaseModel):
    """
    Correspondence between a source event and its external copy.

    Sync statuses:
    - synced: both sides agree with the recorded hashes
    - pending: created but not yet confirmed on the external side
    - conflict: both sides changed since the last sync; waiting on resolution
    - error: the last attempt for this event failed

    For events that originate on the external calendar (source_system
    'external'), `snapshot` holds the internal copy the engine maintains.
    """

    __tablename__ = "calendar_event_mappings"

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Owner of the mapped events"
    )

    connection_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendar_connections.id"),
        nullable=False,
        doc="Connection whose calendar holds the external copy"
    )

    source_system: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="Origin of the event: 'lms', 'internal', 'external'"
    )

    source_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Event ID in its source system"
    )

    external_event_id: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
        doc="Provider event ID of the external copy"
    )

    internal_version_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="Content hash of the source-side event at last sync"
    )

    external_version_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="Content hash of the external copy at last sync"
    )

    snapshot: Mapped[Optional[dict]] = mapped_column(
        get_json_type(),
        nullable=True,
        doc="Canonical form of the last agreed version"
    )

    sync_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        doc="Status: 'synced', 'pending', 'conflict', 'error'"
    )

    last_modified_by: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        doc="Who wrote last: 'lms', 'internal', 'external', 'engine'"
    )

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    internal_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Source-side event no longer exists"
    )

    external_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="External copy no longer exists"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "connection_id", "source_system", "source_id",
            name="uq_event_mapping_source",
        ),
        Index("ix_event_mapping_external", "connection_id", "external_event_id"),
        Index("ix_event_mapping_status", "sync_status"),
        Index("ix_event_mapping_deleted", "deleted_at"),
    )

    @property
    def is_tombstoned(self) -> bool:
        return self.internal_deleted or self.external_deleted

    def __repr__(self) -> str:
        return (
            f"<EventMapping(source='{self.source_system}:{self.source_id}', "
            f"external='{self.external_event_id}', status='{self.sync_status}')>"
        )
