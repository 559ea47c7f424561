"""
Engine-level exceptions.

Provider errors live in calendar_sync.integrations.google_calendar.exceptions;
these cover the orchestration and storage layers.
"""

from typing import Optional


class CalendarSyncError(Exception):
    """Base exception for the sync engine."""

    retryable: bool = False

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class SyncError(CalendarSyncError):
    """
    A sync pass failed in a way that could not be isolated to one event.

    Raised for setup failures (no connections, datastore unreachable) and
    carries which pass and connection it belongs to.
    """

    def __init__(
        self,
        message: str,
        *,
        sync_type: str = "full",
        connection_id: Optional[str] = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message, original_error=original_error)
        self.sync_type = sync_type
        self.connection_id = connection_id


class AlreadyInProgressError(CalendarSyncError):
    """A full sync for this user is already running."""

    def __init__(self, user_id: str):
        super().__init__(f"Sync already in progress for user {user_id}")
        self.user_id = user_id


class ReadOnlySourceError(CalendarSyncError):
    """An edit or delete was about to be applied to a read-only source."""

    def __init__(self, source_system: str, operation: str = "edit"):
        super().__init__(f"Cannot {operation} events from read-only source '{source_system}'")
        self.source_system = source_system
        self.operation = operation


class MappingStoreError(CalendarSyncError):
    """A mapping write violated referential consistency."""


class SyncCancelledError(CalendarSyncError):
    """The run was cancelled cooperatively before finishing."""


class TokenEncryptionError(CalendarSyncError):
    """A stored credential could not be decrypted with the configured key."""
