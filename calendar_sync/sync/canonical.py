"""
Canonical event model shared by every source system.

All comparisons, fingerprints and conflict checks operate on this shape,
never on provider payloads or source rows.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Union

from dateutil.parser import isoparse

from calendar_sync.exceptions import ReadOnlySourceError
from calendar_sync.models.base import as_utc

EventTime = Union[datetime, date]

# Fields that participate in hashing and diffing, in comparison order
COMPARED_FIELDS = ("title", "description", "start", "end", "location")
TIME_FIELDS = frozenset({"start", "end"})


class SourceSystem(str, Enum):
    """Where an event originates. Values are stored in the mapping table."""

    LMS = "lms"
    INTERNAL = "internal"
    EXTERNAL = "external"


class MappingStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


class ConflictType(str, Enum):
    TIME_CHANGE = "time_change"
    CONTENT_CHANGE = "content_change"
    LOCATION_CHANGE = "location_change"
    DELETION_CONFLICT = "deletion_conflict"
    DUPLICATE_EVENT = "duplicate_event"


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    AUTO_RESOLVED = "auto_resolved"


READ_ONLY_SOURCES = frozenset({SourceSystem.LMS})


def _normalize_time(value: EventTime) -> EventTime:
    if isinstance(value, datetime):
        return as_utc(value)
    return value


@dataclass(frozen=True)
class CanonicalEvent:
    """
    Source-independent event.

    Timed events carry aware UTC datetimes; all-day events carry dates with
    an exclusive end date.
    """

    title: str
    start: EventTime
    end: EventTime
    source_system: SourceSystem
    source_id: str
    description: Optional[str] = None
    location: Optional[str] = None
    all_day: bool = False
    metadata: dict = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "start", _normalize_time(self.start))
        object.__setattr__(self, "end", _normalize_time(self.end))

    @property
    def editable(self) -> bool:
        return self.source_system not in READ_ONLY_SOURCES

    @property
    def deletable(self) -> bool:
        return self.source_system not in READ_ONLY_SOURCES

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_snapshot(self) -> dict:
        """JSON-safe form stored on the mapping row."""
        return {
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "all_day": self.all_day,
            "source_system": self.source_system.value,
            "source_id": self.source_id,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "CanonicalEvent":
        all_day = bool(data.get("all_day"))
        start = isoparse(data["start"])
        end = isoparse(data["end"])
        if all_day:
            start, end = start.date(), end.date()
        return cls(
            title=data.get("title") or "",
            description=data.get("description"),
            location=data.get("location"),
            start=start,
            end=end,
            all_day=all_day,
            source_system=SourceSystem(data["source_system"]),
            source_id=data["source_id"],
        )


@dataclass(frozen=True)
class EventDiff:
    changed: bool
    changed_fields: tuple[str, ...] = ()


def _hash_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return _normalize_time(value).isoformat()
    return str(value)


def content_hash(event: CanonicalEvent) -> str:
    """
    Fingerprint of the user-visible content of an event.

    SHA-256 over the sorted JSON of title, description, start, end and
    location. Missing values hash like empty strings.
    """
    payload = {name: _hash_value(getattr(event, name)) for name in COMPARED_FIELDS}
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def diff(old: CanonicalEvent, new: CanonicalEvent) -> EventDiff:
    """Compare the hashed fields of two versions of an event."""
    changed = tuple(
        name for name in COMPARED_FIELDS
        if _hash_value(getattr(old, name)) != _hash_value(getattr(new, name))
    )
    return EventDiff(changed=bool(changed), changed_fields=changed)


def classify_conflict(
    internal: EventDiff,
    external: EventDiff,
    *,
    internal_deleted: bool = False,
    external_deleted: bool = False,
) -> ConflictType:
    """
    Name the kind of divergence when both sides changed since the last sync.

    Deletion on either side wins over field-level classification.
    """
    if internal_deleted or external_deleted:
        return ConflictType.DELETION_CONFLICT

    internal_fields = set(internal.changed_fields)
    external_fields = set(external.changed_fields)

    if internal_fields & TIME_FIELDS and external_fields & TIME_FIELDS:
        return ConflictType.TIME_CHANGE
    if internal_fields == {"location"} and external_fields == {"location"}:
        return ConflictType.LOCATION_CHANGE
    return ConflictType.CONTENT_CHANGE


def is_editable(source_system: SourceSystem | str) -> bool:
    return SourceSystem(source_system) not in READ_ONLY_SOURCES


def is_deletable(source_system: SourceSystem | str) -> bool:
    return SourceSystem(source_system) not in READ_ONLY_SOURCES


def require_editable(source_system: SourceSystem | str) -> None:
    """Raise ReadOnlySourceError before an edit reaches a read-only source."""
    if not is_editable(source_system):
        raise ReadOnlySourceError(SourceSystem(source_system).value, "edit")


def require_deletable(source_system: SourceSystem | str) -> None:
    if not is_deletable(source_system):
        raise ReadOnlySourceError(SourceSystem(source_system).value, "delete")
