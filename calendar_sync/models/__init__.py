"""
SQLAlchemy models for the calendar sync engine.

This module exports all database models for easy importing and
ensures Alembic can discover them for migrations.
"""

from calendar_sync.models.base import Base, BaseModel, GUID, as_utc, get_json_type, utcnow

# Import all models (must be imported for Alembic autogenerate)
from calendar_sync.models.connections import CalendarConnection
from calendar_sync.models.mappings import EventMapping
from calendar_sync.models.sync_log import SyncRunLog
from calendar_sync.models.conflicts import SyncConflict
from calendar_sync.models.sources import LmsCalendarEvent, StudySession

__all__ = [
    # Base classes
    "Base",
    "BaseModel",
    "GUID",
    "as_utc",
    "get_json_type",
    "utcnow",
    # Engine-owned
    "CalendarConnection",
    "EventMapping",
    "SyncRunLog",
    "SyncConflict",
    # Read-only sources
    "LmsCalendarEvent",
    "StudySession",
]
