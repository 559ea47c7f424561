"""
Custom exceptions for Google Calendar operations.

Provides structured error handling with retryable flags, plus the mapping
from HTTP responses to exceptions and the user-facing wording.
"""

from typing import Optional

import httpx

RECONNECT_MESSAGE = "Please reconnect your Google Calendar account."
RETRY_LATER_MESSAGE = "Calendar sync failed. We'll try again shortly."

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
DEFAULT_RETRY_AFTER_SECONDS = 60.0


class GoogleCalendarError(Exception):
    """Base exception for Google Calendar operations."""

    retryable: bool = False
    retryable_after_refetch: bool = False

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.status_code = status_code
        self.details = details or {}


class GoogleCalendarAuthError(GoogleCalendarError):
    """
    Authentication or authorization failure.

    Causes:
    - Revoked grant or invalid credentials
    - Insufficient scopes
    - Refresh token rejected (invalid_grant)

    Requires the user to reconnect.
    """

    retryable = False


class AuthExpiredError(GoogleCalendarAuthError):
    """
    Stored access token is expired but a refresh token exists.

    Callers refresh centrally and retry; the client never refreshes inline.
    """


class GoogleCalendarRateLimitError(GoogleCalendarError):
    """
    Rate limit or quota hit (429, or 403 with a rate-limit reason).

    Retryable after the provider-advertised delay.
    """

    retryable = True

    def __init__(self, message: str, retry_after: float = DEFAULT_RETRY_AFTER_SECONDS, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class GoogleCalendarNotFoundError(GoogleCalendarError):
    """
    Event or calendar not found.

    Causes:
    - Event was deleted
    - Calendar ID is invalid
    """

    retryable = False


class GoogleCalendarConflictError(GoogleCalendarError):
    """
    Event update conflict (409 or 412 precondition failed).

    Causes:
    - Stale etag (event was modified concurrently)
    - Duplicate event ID on insert

    Writes to an existing event are retried after re-reading it.
    """

    retryable = False
    retryable_after_refetch = True


class GoogleCalendarServiceUnavailableError(GoogleCalendarError):
    """Provider-side failure (5xx). Retryable after backoff."""

    retryable = True


class GoogleCalendarNetworkError(GoogleCalendarError):
    """Transport failure or timeout before a response arrived. Retryable."""

    retryable = True


class SyncTokenExpiredError(GoogleCalendarError):
    """
    Incremental sync token no longer valid (410 Gone).

    The caller must fall back to a full window listing.
    """

    retryable = False


class GoogleCalendarValidationError(GoogleCalendarError):
    """
    Invalid event data (400).

    Causes:
    - Invalid datetime format
    - Missing required fields
    """

    retryable = False


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(float(value), 0.0)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def _error_body(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    if isinstance(payload, dict):
        return payload.get("error", payload) if isinstance(payload.get("error"), dict) else payload
    return {"raw": payload}


def _error_reasons(body: dict) -> set[str]:
    return {err.get("reason", "") for err in body.get("errors", []) if isinstance(err, dict)}


def error_from_response(response: httpx.Response, *, using_sync_token: bool = False) -> GoogleCalendarError:
    """
    Convert a non-success provider response to the matching exception.

    Args:
        response: The failed HTTP response
        using_sync_token: The request carried a syncToken (410 means token expired)

    Returns:
        Exception instance to raise
    """
    status = response.status_code
    body = _error_body(response)
    reasons = _error_reasons(body)
    kwargs = {"status_code": status, "details": body}

    if status == 401:
        return GoogleCalendarAuthError(
            "Authentication failed - credentials may be invalid or revoked",
            **kwargs,
        )
    if status == 403:
        if reasons & _RATE_LIMIT_REASONS:
            return GoogleCalendarRateLimitError(
                "API quota exceeded",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                **kwargs,
            )
        return GoogleCalendarAuthError(
            "Access denied - check calendar permissions",
            **kwargs,
        )
    if status == 429:
        return GoogleCalendarRateLimitError(
            "Rate limit exceeded - too many requests",
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            **kwargs,
        )
    if status == 410 and using_sync_token:
        return SyncTokenExpiredError("Sync token expired - full listing required", **kwargs)
    if status in (404, 410):
        return GoogleCalendarNotFoundError("Event or calendar not found", **kwargs)
    if status in (409, 412):
        return GoogleCalendarConflictError(
            "Event was modified by another process",
            **kwargs,
        )
    if status == 400:
        return GoogleCalendarValidationError(
            f"Invalid request: {body.get('message', 'bad request')}",
            **kwargs,
        )
    if status >= 500:
        return GoogleCalendarServiceUnavailableError(
            f"Google Calendar service error ({status})",
            **kwargs,
        )
    return GoogleCalendarError(f"Google Calendar API error ({status})", **kwargs)


def format_error_for_user(error: Exception) -> str:
    """Short message safe to show to the account owner; never includes provider bodies."""
    if isinstance(error, GoogleCalendarAuthError):
        return RECONNECT_MESSAGE
    return RETRY_LATER_MESSAGE


def requires_reconnect(error: Exception) -> bool:
    return isinstance(error, GoogleCalendarAuthError) and not isinstance(error, AuthExpiredError)
