"""
Google Calendar REST client with retry and error handling.

Provides a thin async interface over the Google Calendar API v3 using
httpx. Access tokens come from an injected provider; the client never
refreshes credentials itself.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from calendar_sync.config import Settings, get_settings
from calendar_sync.integrations.google_calendar.exceptions import (
    GoogleCalendarError,
    GoogleCalendarNetworkError,
    GoogleCalendarNotFoundError,
    GoogleCalendarRateLimitError,
    error_from_response,
)
from calendar_sync.integrations.google_calendar.types import (
    CalendarListEntry,
    EventPage,
    GoogleEvent,
    WatchChannel,
)
from calendar_sync.models.base import as_utc

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]
SendUpdates = Literal["all", "externalOnly", "none"]

MAX_PAGE_SIZE = 2500


def _is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, GoogleCalendarError):
        return exception.retryable
    return False


def _is_retryable_write_error(exception: BaseException) -> bool:
    """Writes to an existing event also retry on 409/412, after a re-read."""
    if isinstance(exception, GoogleCalendarError) and exception.retryable_after_refetch:
        return True
    return _is_retryable_error(exception)


class wait_retry_after(wait_base):
    """
    Wait exactly as long as the provider's Retry-After asks on rate
    limits; otherwise defer to the fallback strategy.
    """

    def __init__(self, fallback: wait_base):
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, GoogleCalendarRateLimitError):
            return max(exc.retry_after, 0.0)
        return self.fallback(retry_state)


def _rfc3339(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


def _segment(value: str) -> str:
    return quote(value, safe="")


class GoogleCalendarClient:
    """
    Async wrapper around Google Calendar API v3.

    Provides:
    - Bearer auth from an injected token provider
    - Retry with exponential backoff (1s doubling, capped) on retryable errors
    - Rate limits wait out the provider's Retry-After in full
    - 409/412 on event writes retried after re-reading the event
    - Transparent pagination for event listings, bounded by a page ceiling
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the client.

        Args:
            token_provider: Coroutine returning a valid access token; raises
                AuthExpiredError when the stored token needs a refresh
            settings: Application settings (defaults to get_settings())
            http_client: Preconfigured httpx client (tests use MockTransport)
            sleep: Awaitable used between retries
        """
        self._settings = settings or get_settings()
        self._token_provider = token_provider
        self._base_url = self._settings.google_api_base_url.rstrip("/")
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.request_timeout_seconds)
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "GoogleCalendarClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _retrying(self, *, retry_conflicts: bool = False) -> AsyncRetrying:
        settings = self._settings
        return AsyncRetrying(
            stop=stop_after_attempt(settings.retry_max_attempts),
            wait=wait_retry_after(
                fallback=wait_exponential(
                    multiplier=settings.retry_initial_delay_seconds,
                    max=settings.retry_max_delay_seconds,
                ),
            ),
            retry=retry_if_exception(
                _is_retryable_write_error if retry_conflicts else _is_retryable_error
            ),
            sleep=self._sleep,
            reraise=True,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        using_sync_token: bool = False,
    ) -> httpx.Response:
        token = await self._token_provider()
        headers = {"Authorization": f"Bearer {token}"}
        url = f"{self._base_url}{path}"

        try:
            response = await self._http.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise GoogleCalendarNetworkError(f"Request timed out: {method} {path}", original_error=e)
        except httpx.TransportError as e:
            raise GoogleCalendarNetworkError(f"Network error: {e}", original_error=e)

        if response.is_success:
            return response

        error = error_from_response(response, using_sync_token=using_sync_token)
        logger.warning(
            f"Google Calendar {method} {path} failed with {response.status_code}: {error.message}",
            extra={"status_code": response.status_code, "details": error.details},
        )
        raise error

    async def _request(
        self,
        method: str,
        path: str,
        *,
        refetch: Optional[Callable[[], Awaitable[Any]]] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send with retries. When `refetch` is given, 409/412 responses are
        retried too, and `refetch` runs before every retry of the write.
        """
        async for attempt in self._retrying(retry_conflicts=refetch is not None):
            with attempt:
                if refetch is not None and attempt.retry_state.attempt_number > 1:
                    await refetch()
                return await self._send(method, path, **kwargs)
        raise AssertionError("unreachable")

    def _refetch(self, calendar_id: str, event_id: str) -> Callable[[], Awaitable[Any]]:
        async def _reload() -> GoogleEvent:
            logger.info(f"Write to event {event_id} conflicted; re-reading before retry")
            return await self.get_event(calendar_id, event_id)

        return _reload

    # =========================================================================
    # Events
    # =========================================================================

    async def get_events(
        self,
        calendar_id: str,
        *,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        updated_min: Optional[datetime] = None,
        single_events: bool = True,
        show_deleted: bool = False,
    ) -> EventPage:
        """
        List events, following pagination.

        With a sync token, time filters are not allowed by the API and are
        dropped. Listing stops after `events_max_pages` pages; the result is
        then flagged as truncated.

        Raises:
            SyncTokenExpiredError: The sync token is no longer valid (410)
        """
        settings = self._settings
        base_params: dict[str, Any] = {
            "maxResults": min(settings.events_page_size, MAX_PAGE_SIZE),
            "singleEvents": single_events,
        }
        if sync_token:
            base_params["syncToken"] = sync_token
        else:
            if time_min is not None:
                base_params["timeMin"] = _rfc3339(time_min)
            if time_max is not None:
                base_params["timeMax"] = _rfc3339(time_max)
            if updated_min is not None:
                base_params["updatedMin"] = _rfc3339(updated_min)
                show_deleted = True
            if single_events:
                base_params["orderBy"] = "startTime"
        if show_deleted:
            base_params["showDeleted"] = True

        path = f"/calendars/{_segment(calendar_id)}/events"
        items: list[GoogleEvent] = []
        next_sync_token = None
        pages = 0

        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token

            response = await self._request("GET", path, params=params, using_sync_token=bool(sync_token))
            data = response.json()
            items.extend(GoogleEvent.model_validate(item) for item in data.get("items", []))
            next_sync_token = data.get("nextSyncToken", next_sync_token)
            page_token = data.get("nextPageToken")
            pages += 1

            if not page_token:
                break
            if pages >= settings.events_max_pages:
                logger.warning(
                    f"Stopped listing {calendar_id} after {pages} pages; results truncated"
                )
                return EventPage(items=items, next_page_token=page_token, truncated=True)

        logger.debug(f"Listed {len(items)} events from {calendar_id} in {pages} page(s)")
        return EventPage(items=items, next_sync_token=next_sync_token)

    async def get_event(self, calendar_id: str, event_id: str) -> GoogleEvent:
        response = await self._request(
            "GET", f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}"
        )
        return GoogleEvent.model_validate(response.json())

    async def create_event(
        self,
        calendar_id: str,
        event: GoogleEvent,
        *,
        send_updates: SendUpdates = "none",
    ) -> GoogleEvent:
        """Insert an event and return the stored resource (with its new ID)."""
        response = await self._request(
            "POST",
            f"/calendars/{_segment(calendar_id)}/events",
            params={"sendUpdates": send_updates},
            json=event.to_api(),
        )
        created = GoogleEvent.model_validate(response.json())
        logger.info(f"Created event {created.id} in {calendar_id}")
        return created

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        event: GoogleEvent,
        *,
        send_updates: SendUpdates = "none",
    ) -> GoogleEvent:
        """Replace an event entirely (PUT)."""
        response = await self._request(
            "PUT",
            f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}",
            params={"sendUpdates": send_updates},
            json=event.to_api(),
            refetch=self._refetch(calendar_id, event_id),
        )
        return GoogleEvent.model_validate(response.json())

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        event: GoogleEvent | dict,
        *,
        send_updates: SendUpdates = "none",
    ) -> GoogleEvent:
        """Update only the fields present in `event` (PATCH)."""
        body = event.to_api() if isinstance(event, GoogleEvent) else event
        response = await self._request(
            "PATCH",
            f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}",
            params={"sendUpdates": send_updates},
            json=body,
            refetch=self._refetch(calendar_id, event_id),
        )
        return GoogleEvent.model_validate(response.json())

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        send_updates: SendUpdates = "none",
    ) -> bool:
        """
        Delete an event.

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            await self._request(
                "DELETE",
                f"/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}",
                params={"sendUpdates": send_updates},
            )
        except GoogleCalendarNotFoundError:
            logger.debug(f"Event {event_id} already deleted from {calendar_id}")
            return False
        logger.info(f"Deleted event {event_id} from {calendar_id}")
        return True

    # =========================================================================
    # Calendars and push notifications
    # =========================================================================

    async def list_calendars(self) -> list[CalendarListEntry]:
        response = await self._request("GET", "/users/me/calendarList")
        return [CalendarListEntry.model_validate(item) for item in response.json().get("items", [])]

    async def watch_calendar(
        self,
        calendar_id: str,
        webhook_url: str,
        *,
        channel_id: Optional[str] = None,
        token: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> WatchChannel:
        """
        Open a push notification channel for a calendar's events.

        Args:
            calendar_id: Calendar to watch
            webhook_url: HTTPS address Google posts notifications to
            channel_id: Channel ID to use (random UUID by default)
            token: Verification token echoed in X-Goog-Channel-Token
            ttl_seconds: Requested channel lifetime
        """
        body: dict[str, Any] = {
            "id": channel_id or str(uuid.uuid4()),
            "type": "web_hook",
            "address": webhook_url,
        }
        if token:
            body["token"] = token
        if ttl_seconds:
            body["params"] = {"ttl": str(ttl_seconds)}

        response = await self._request(
            "POST", f"/calendars/{_segment(calendar_id)}/events/watch", json=body
        )
        channel = WatchChannel.model_validate(response.json())
        logger.info(f"Watching {calendar_id} on channel {channel.id} until {channel.expires_at}")
        return channel

    async def stop_watching(self, channel_id: str, resource_id: str) -> None:
        """Stop a push channel. Channels that no longer exist are ignored."""
        try:
            await self._request(
                "POST", "/channels/stop", json={"id": channel_id, "resourceId": resource_id}
            )
        except GoogleCalendarNotFoundError:
            logger.debug(f"Channel {channel_id} already stopped")
            return
        logger.info(f"Stopped channel {channel_id}")
