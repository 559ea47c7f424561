"""
Typed payloads for the Google Calendar REST API.

Field names follow Python conventions; aliases carry the camelCase wire
names. Unknown fields from the provider are preserved.
"""

import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GoogleModel(BaseModel):
    """Base for provider payloads: camelCase on the wire, extra fields kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_api(self) -> dict:
        """Serialize to the JSON body the API expects."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventDateTime(GoogleModel):
    """Start or end of an event: `date` for all-day, `dateTime` otherwise."""

    date: Optional[dt.date] = None
    date_time: Optional[dt.datetime] = None
    time_zone: Optional[str] = None


class ExtendedProperties(GoogleModel):
    private: dict[str, str] = Field(default_factory=dict)
    shared: dict[str, str] = Field(default_factory=dict)


class ReminderOverride(GoogleModel):
    method: Literal["email", "popup"] = "popup"
    minutes: int


class Reminders(GoogleModel):
    use_default: bool = False
    overrides: list[ReminderOverride] = Field(default_factory=list)


class GoogleEvent(GoogleModel):
    """Calendar event resource (subset of fields used by the sync engine)."""

    id: Optional[str] = None
    status: Optional[Literal["confirmed", "tentative", "cancelled"]] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[EventDateTime] = None
    end: Optional[EventDateTime] = None
    updated: Optional[dt.datetime] = None
    etag: Optional[str] = None
    html_link: Optional[str] = None
    transparency: Optional[Literal["opaque", "transparent"]] = None
    color_id: Optional[str] = None
    reminders: Optional[Reminders] = None
    extended_properties: Optional[ExtendedProperties] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def private_properties(self) -> dict[str, str]:
        if self.extended_properties is None:
            return {}
        return self.extended_properties.private


class EventPage(GoogleModel):
    """Result of a (possibly multi-page) events.list call."""

    items: list[GoogleEvent] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None
    truncated: bool = False


class CalendarListEntry(GoogleModel):
    id: str
    summary: Optional[str] = None
    time_zone: Optional[str] = None
    primary: bool = False
    access_role: Optional[str] = None


class WatchChannel(GoogleModel):
    """Push notification channel returned by events.watch."""

    id: str
    resource_id: str
    resource_uri: Optional[str] = None
    token: Optional[str] = None
    expiration: Optional[int] = Field(default=None, description="Epoch milliseconds")

    @property
    def expires_at(self) -> Optional[dt.datetime]:
        if self.expiration is None:
            return None
        return dt.datetime.fromtimestamp(int(self.expiration) / 1000, tz=dt.timezone.utc)


class WebhookNotification(BaseModel):
    """Headers of a push notification, normalized."""

    channel_id: str
    resource_id: Optional[str] = None
    resource_state: str = Field(description="'sync', 'exists' or 'not_exists'")
    token: Optional[str] = None
    message_number: Optional[int] = None
