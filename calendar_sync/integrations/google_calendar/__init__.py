"""
Google Calendar integration.

Provides the REST client, typed payloads and the provider error taxonomy.
"""

from calendar_sync.integrations.google_calendar.client import GoogleCalendarClient
from calendar_sync.integrations.google_calendar.exceptions import (
    AuthExpiredError,
    GoogleCalendarAuthError,
    GoogleCalendarConflictError,
    GoogleCalendarError,
    GoogleCalendarNetworkError,
    GoogleCalendarNotFoundError,
    GoogleCalendarRateLimitError,
    GoogleCalendarServiceUnavailableError,
    GoogleCalendarValidationError,
    SyncTokenExpiredError,
    format_error_for_user,
)
from calendar_sync.integrations.google_calendar.types import (
    EventPage,
    GoogleEvent,
    WatchChannel,
    WebhookNotification,
)

__all__ = [
    "GoogleCalendarClient",
    "GoogleCalendarError",
    "GoogleCalendarAuthError",
    "AuthExpiredError",
    "GoogleCalendarConflictError",
    "GoogleCalendarNetworkError",
    "GoogleCalendarNotFoundError",
    "GoogleCalendarRateLimitError",
    "GoogleCalendarServiceUnavailableError",
    "GoogleCalendarValidationError",
    "SyncTokenExpiredError",
    "format_error_for_user",
    "EventPage",
    "GoogleEvent",
    "WatchChannel",
    "WebhookNotification",
]
