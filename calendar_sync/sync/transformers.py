"""
Bidirectional mapping between source rows, canonical events and Google events.

Handles:
- Title prefixes and description footers marking engine-authored copies
- All-day (date) vs timed (dateTime + timeZone) encoding
- Default duration for source events without an end time
- Private extended properties identifying the origin of a copy
"""

from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calendar_sync.integrations.google_calendar.types import (
    EventDateTime,
    ExtendedProperties,
    GoogleEvent,
    ReminderOverride,
    Reminders,
)
from calendar_sync.models.base import as_utc
from calendar_sync.models.sources import LmsCalendarEvent, StudySession
from calendar_sync.sync.canonical import CanonicalEvent, SourceSystem

DEFAULT_DURATION = timedelta(minutes=60)

# Marker written to every engine-authored event
ENGINE_MARKER = "calendar_sync"

TITLE_PREFIXES = {
    SourceSystem.LMS: "[LMS] ",
    SourceSystem.INTERNAL: "[Study] ",
}

SOURCE_LABELS = {
    SourceSystem.LMS: "your LMS",
    SourceSystem.INTERNAL: "your study planner",
}

FOOTER_SEPARATOR = "\n\n---\n"

REMINDER_MINUTES = {
    SourceSystem.LMS: (1440, 60),
    SourceSystem.INTERNAL: (15,),
}


def _footer(source_system: SourceSystem) -> str:
    return f"{FOOTER_SEPARATOR}Synced from {SOURCE_LABELS[source_system]}. Edit it there to keep changes."


def _resolve_end(start: datetime, end: Optional[datetime], default_duration: timedelta) -> datetime:
    start = as_utc(start)
    if end is None:
        return start + default_duration
    end = as_utc(end)
    return end if end > start else start + default_duration


def _all_day_bounds(start: datetime, end: Optional[datetime]) -> tuple[date, date]:
    start_day = as_utc(start).date()
    end_day = as_utc(end).date() if end is not None else start_day
    if end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    return start_day, end_day


def lms_event_to_canonical(
    event: LmsCalendarEvent,
    default_duration: timedelta = DEFAULT_DURATION,
) -> CanonicalEvent:
    """Convert an LMS calendar row. Missing end times default to start + duration."""
    if event.all_day:
        start, end = _all_day_bounds(event.start_at, event.end_at)
    else:
        start = as_utc(event.start_at)
        end = _resolve_end(event.start_at, event.end_at, default_duration)

    return CanonicalEvent(
        title=event.title,
        description=event.description,
        location=event.location_name,
        start=start,
        end=end,
        all_day=bool(event.all_day),
        source_system=SourceSystem.LMS,
        source_id=str(event.id),
        metadata={
            "event_type": event.event_type,
            "course_name": event.course_name,
            "url": event.url,
        },
    )


def study_session_to_canonical(
    session: StudySession,
    default_duration: timedelta = DEFAULT_DURATION,
) -> CanonicalEvent:
    """Convert a study session row."""
    return CanonicalEvent(
        title=session.title,
        description=session.description,
        start=as_utc(session.start_time),
        end=_resolve_end(session.start_time, session.end_time, default_duration),
        source_system=SourceSystem.INTERNAL,
        source_id=str(session.id),
        metadata={
            "session_type": session.session_type,
            "course_name": session.course_name,
        },
    )


def is_engine_authored(event: GoogleEvent) -> bool:
    """True when the event was written by this engine (private 'source' property set)."""
    return bool(event.private_properties.get("source"))


def extract_source_system(event: GoogleEvent) -> SourceSystem:
    source = event.private_properties.get("source")
    try:
        return SourceSystem(source) if source else SourceSystem.EXTERNAL
    except ValueError:
        return SourceSystem.EXTERNAL


def _strip_decorations(text: Optional[str], marker: str, at_start: bool) -> Optional[str]:
    if not text:
        return text
    if at_start:
        return text[len(marker):] if text.startswith(marker) else text
    head, sep, _ = text.partition(marker)
    return head if sep else text


def _parse_event_time(value: Optional[EventDateTime]):
    if value is None:
        return None
    if value.date is not None:
        return value.date
    if value.date_time is not None:
        return as_utc(value.date_time)
    return None


def external_event_to_canonical(
    event: GoogleEvent,
    default_duration: timedelta = DEFAULT_DURATION,
) -> CanonicalEvent:
    """
    Convert a Google event.

    Engine-authored copies keep their origin and have the title prefix and
    description footer removed, so the result compares against the source.
    """
    source_system = extract_source_system(event)
    title = event.summary or ""
    description = event.description

    if source_system in TITLE_PREFIXES:
        title = _strip_decorations(title, TITLE_PREFIXES[source_system], at_start=True)
        description = _strip_decorations(description, FOOTER_SEPARATOR, at_start=False)
        source_id = event.private_properties.get("source_id") or event.id
    else:
        source_id = event.id

    start = _parse_event_time(event.start)
    end = _parse_event_time(event.end)
    if start is None:
        raise ValueError(f"Google event {event.id} has no start time")

    all_day = isinstance(start, date) and not isinstance(start, datetime)
    if end is None:
        end = start + (timedelta(days=1) if all_day else default_duration)

    return CanonicalEvent(
        title=title,
        description=description or None,
        location=event.location,
        start=start,
        end=end,
        all_day=all_day,
        source_system=source_system,
        source_id=str(source_id),
    )


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _encode_time(value, all_day: bool, time_zone: str) -> EventDateTime:
    if all_day:
        return EventDateTime(date=value)
    return EventDateTime(date_time=value.astimezone(_zone(time_zone)), time_zone=time_zone)


def canonical_to_external(event: CanonicalEvent, time_zone: str = "UTC") -> GoogleEvent:
    """
    Build the Google payload for a canonical event.

    Events from the LMS or study planner get a title prefix, a description
    footer, default reminders and the private properties that mark them as
    engine-authored. External-origin events are written back unchanged.
    """
    source = event.source_system
    start = _encode_time(event.start, event.all_day, time_zone)
    end = _encode_time(event.end, event.all_day, time_zone)

    if source not in TITLE_PREFIXES:
        return GoogleEvent(
            summary=event.title,
            description=event.description,
            location=event.location,
            start=start,
            end=end,
        )

    return GoogleEvent(
        summary=f"{TITLE_PREFIXES[source]}{event.title}",
        description=f"{event.description or ''}{_footer(source)}",
        location=event.location,
        start=start,
        end=end,
        transparency="opaque",
        reminders=Reminders(
            use_default=False,
            overrides=[ReminderOverride(method="popup", minutes=m) for m in REMINDER_MINUTES[source]],
        ),
        extended_properties=ExtendedProperties(
            private={
                "source": source.value,
                "source_id": event.source_id,
                "sync_engine": ENGINE_MARKER,
            }
        ),
    )


def lms_event_to_external(
    event: LmsCalendarEvent,
    time_zone: str = "UTC",
    default_duration: timedelta = DEFAULT_DURATION,
) -> GoogleEvent:
    return canonical_to_external(lms_event_to_canonical(event, default_duration), time_zone)


def study_session_to_external(
    session: StudySession,
    time_zone: str = "UTC",
    default_duration: timedelta = DEFAULT_DURATION,
) -> GoogleEvent:
    return canonical_to_external(study_session_to_canonical(session, default_duration), time_zone)
