"""Tests for mapping provider responses to exceptions and user messages."""

import httpx
import pytest

from calendar_sync.integrations.google_calendar.exceptions import (
    RECONNECT_MESSAGE,
    RETRY_LATER_MESSAGE,
    AuthExpiredError,
    GoogleCalendarAuthError,
    GoogleCalendarConflictError,
    GoogleCalendarError,
    GoogleCalendarNotFoundError,
    GoogleCalendarRateLimitError,
    GoogleCalendarServiceUnavailableError,
    GoogleCalendarValidationError,
    SyncTokenExpiredError,
    error_from_response,
    format_error_for_user,
    requires_reconnect,
)


def response(status: int, reasons: tuple[str, ...] = (), headers: dict | None = None) -> httpx.Response:
    body = {"error": {"code": status, "message": "boom", "errors": [{"reason": r} for r in reasons]}}
    return httpx.Response(status, json=body, headers=headers)


class TestErrorFromResponse:
    @pytest.mark.parametrize("status,expected", [
        (401, GoogleCalendarAuthError),
        (404, GoogleCalendarNotFoundError),
        (409, GoogleCalendarConflictError),
        (412, GoogleCalendarConflictError),
        (400, GoogleCalendarValidationError),
        (500, GoogleCalendarServiceUnavailableError),
        (503, GoogleCalendarServiceUnavailableError),
    ])
    def test_status_mapping(self, status, expected):
        error = error_from_response(response(status))
        assert type(error) is expected
        assert error.status_code == status

    def test_403_without_rate_reason_is_auth(self):
        assert isinstance(error_from_response(response(403, ("forbidden",))), GoogleCalendarAuthError)

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"])
    def test_403_rate_reasons_are_rate_limits(self, reason):
        error = error_from_response(response(403, (reason,)))
        assert isinstance(error, GoogleCalendarRateLimitError)
        assert error.retryable is True

    def test_429_reads_retry_after(self):
        error = error_from_response(response(429, headers={"Retry-After": "12"}))
        assert error.retry_after == 12

    def test_429_defaults_to_sixty_seconds(self):
        assert error_from_response(response(429)).retry_after == 60

    def test_410_with_sync_token(self):
        assert isinstance(error_from_response(response(410), using_sync_token=True), SyncTokenExpiredError)

    def test_410_without_sync_token_is_not_found(self):
        assert isinstance(error_from_response(response(410)), GoogleCalendarNotFoundError)

    def test_non_json_body(self):
        error = error_from_response(httpx.Response(502, text="<html>bad gateway</html>"))
        assert isinstance(error, GoogleCalendarServiceUnavailableError)
        assert "bad gateway" in error.details["raw"]

    def test_conflicts_retry_only_after_refetch(self):
        error = error_from_response(response(412))
        assert error.retryable is False
        assert error.retryable_after_refetch is True
        assert error_from_response(response(503)).retryable_after_refetch is False


class TestUserMessages:
    def test_auth_errors_ask_to_reconnect(self):
        assert format_error_for_user(GoogleCalendarAuthError("revoked")) == RECONNECT_MESSAGE
        assert requires_reconnect(GoogleCalendarAuthError("revoked")) is True

    def test_expired_token_does_not_require_reconnect(self):
        assert requires_reconnect(AuthExpiredError("expired")) is False

    def test_other_errors_use_generic_message(self):
        error = GoogleCalendarError("500 from upstream: internal details")
        assert format_error_for_user(error) == RETRY_LATER_MESSAGE
        assert format_error_for_user(ValueError("x")) == RETRY_LATER_MESSAGE
