"""Tests for the canonical event model, hashing and conflict classification."""

from datetime import date, datetime, timedelta, timezone

import pytest

from calendar_sync.exceptions import ReadOnlySourceError
from calendar_sync.sync.canonical import (
    CanonicalEvent,
    ConflictType,
    EventDiff,
    SourceSystem,
    classify_conflict,
    content_hash,
    diff,
    is_editable,
    require_deletable,
    require_editable,
)

START = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


def make_event(**overrides) -> CanonicalEvent:
    values = {
        "title": "Lab report",
        "start": START,
        "end": START + timedelta(hours=1),
        "source_system": SourceSystem.INTERNAL,
        "source_id": "study-1",
        "description": "Chapter 4",
        "location": "Library",
    }
    values.update(overrides)
    return CanonicalEvent(**values)


class TestCanonicalEvent:
    def test_naive_datetimes_are_treated_as_utc(self):
        event = make_event(start=datetime(2026, 3, 2, 14, 0), end=datetime(2026, 3, 2, 15, 0))
        assert event.start == START
        assert event.start.tzinfo is not None

    def test_aware_datetimes_are_normalized_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        event = make_event(start=datetime(2026, 3, 2, 16, 0, tzinfo=plus_two))
        assert event.start == START
        assert event.start.utcoffset() == timedelta(0)

    def test_lms_events_are_read_only(self):
        event = make_event(source_system=SourceSystem.LMS)
        assert event.editable is False
        assert event.deletable is False

    def test_snapshot_round_trip_timed(self):
        event = make_event()
        restored = CanonicalEvent.from_snapshot(event.to_snapshot())
        assert restored == event

    def test_snapshot_round_trip_all_day(self):
        event = make_event(start=date(2026, 3, 2), end=date(2026, 3, 3), all_day=True)
        restored = CanonicalEvent.from_snapshot(event.to_snapshot())
        assert restored.start == date(2026, 3, 2)
        assert restored.all_day is True


class TestContentHash:
    """Hashes must depend on user-visible content only."""

    def test_stable_for_equal_content(self):
        assert content_hash(make_event()) == content_hash(make_event())

    def test_ignores_source_identity_and_metadata(self):
        a = make_event(metadata={"course_name": "Bio"})
        b = make_event(source_system=SourceSystem.EXTERNAL, source_id="ext-9")
        assert content_hash(a) == content_hash(b)

    def test_none_and_empty_hash_alike(self):
        assert content_hash(make_event(description=None)) == content_hash(make_event(description=""))

    def test_same_instant_in_other_zone_hashes_alike(self):
        plus_two = timezone(timedelta(hours=2))
        shifted = make_event(
            start=START.astimezone(plus_two),
            end=(START + timedelta(hours=1)).astimezone(plus_two),
        )
        assert content_hash(shifted) == content_hash(make_event())

    @pytest.mark.parametrize("field,value", [
        ("title", "Lab report v2"),
        ("description", "Chapter 5"),
        ("location", "Room 12"),
        ("start", START + timedelta(minutes=30)),
        ("end", START + timedelta(hours=2)),
    ])
    def test_each_compared_field_changes_hash(self, field, value):
        assert content_hash(make_event(**{field: value})) != content_hash(make_event())

    def test_hash_is_sha256_hex(self):
        digest = content_hash(make_event())
        assert len(digest) == 64
        int(digest, 16)


class TestDiff:
    def test_no_changes(self):
        result = diff(make_event(), make_event())
        assert result == EventDiff(changed=False, changed_fields=())

    def test_lists_changed_fields_in_order(self):
        result = diff(make_event(), make_event(location="Room 12", title="New"))
        assert result.changed is True
        assert result.changed_fields == ("title", "location")


class TestClassifyConflict:
    def test_deletion_wins(self):
        both_time = EventDiff(True, ("start",))
        assert classify_conflict(both_time, both_time, external_deleted=True) == ConflictType.DELETION_CONFLICT

    def test_both_moved_is_time_change(self):
        result = classify_conflict(EventDiff(True, ("start", "end")), EventDiff(True, ("start",)))
        assert result == ConflictType.TIME_CHANGE

    def test_location_only_on_both_sides(self):
        result = classify_conflict(EventDiff(True, ("location",)), EventDiff(True, ("location",)))
        assert result == ConflictType.LOCATION_CHANGE

    def test_mixed_edits_are_content_change(self):
        result = classify_conflict(EventDiff(True, ("title",)), EventDiff(True, ("start",)))
        assert result == ConflictType.CONTENT_CHANGE


class TestReadOnlyGuards:
    def test_require_editable_raises_for_lms(self):
        with pytest.raises(ReadOnlySourceError) as exc_info:
            require_editable(SourceSystem.LMS)
        assert exc_info.value.source_system == "lms"
        assert exc_info.value.operation == "edit"

    def test_require_deletable_raises_for_lms(self):
        with pytest.raises(ReadOnlySourceError) as exc_info:
            require_deletable("lms")
        assert exc_info.value.operation == "delete"

    def test_internal_and_external_are_editable(self):
        require_editable(SourceSystem.INTERNAL)
        require_deletable("external")
        assert is_editable("internal") is True
