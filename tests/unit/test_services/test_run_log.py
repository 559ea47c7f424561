"""Tests for SyncRunLogStore and SyncConflictStore."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from calendar_sync.services.mapping_store import EventMappingStore
from calendar_sync.services.run_log import DetectedConflict, SyncConflictStore, SyncRunLogStore
from calendar_sync.sync.canonical import (
    CanonicalEvent,
    ConflictType,
    ResolutionStatus,
    SourceSystem,
    content_hash,
)


def _event(title: str) -> CanonicalEvent:
    start = datetime(2026, 11, 2, 15, 0, tzinfo=timezone.utc)
    return CanonicalEvent(
        title=title,
        start=start,
        end=start + timedelta(minutes=45),
        source_system=SourceSystem.INTERNAL,
        source_id="study-1",
    )


@pytest.fixture
def run_log(session_factory) -> SyncRunLogStore:
    return SyncRunLogStore(session_factory)


@pytest.fixture
def conflicts(session_factory) -> SyncConflictStore:
    return SyncConflictStore(session_factory)


@pytest_asyncio.fixture
async def mapping(session_factory, make_connection):
    connection = await make_connection()
    return await EventMappingStore(session_factory).upsert(
        "user-1", connection.id, "internal", "study-1", sync_status="synced",
    )


class TestSyncRunLogStore:
    @pytest.mark.asyncio
    async def test_latest_finalized_skips_running(self, run_log):
        finished = await run_log.start("user-1", "full")
        await run_log.finalize(finished.id, "completed", created=2)
        await run_log.start("user-1", "full")

        latest = await run_log.latest_finalized("user-1")

        assert latest.id == finished.id
        assert latest.events_created == 2

    @pytest.mark.asyncio
    async def test_no_runs(self, run_log):
        assert await run_log.latest_finalized("nobody") is None

    @pytest.mark.asyncio
    async def test_finalize_once(self, run_log):
        run = await run_log.start("user-1", "incremental")
        await run_log.finalize(run.id, "failed", error_message="boom")

        with pytest.raises(ValueError):
            await run_log.finalize(run.id, "completed")


class TestSyncConflictStore:
    def _detected(self, mapping, **overrides) -> DetectedConflict:
        values = dict(
            mapping_id=mapping.id,
            user_id="user-1",
            connection_id=mapping.connection_id,
            conflict_type=ConflictType.CONTENT_CHANGE,
            internal_snapshot=_event("Chem review").to_snapshot(),
            external_snapshot=_event("Chemistry review").to_snapshot(),
            internal_changes=["title"],
            external_changes=["title"],
        )
        values.update(overrides)
        return DetectedConflict(**values)

    @pytest.mark.asyncio
    async def test_redetection_keeps_one_pending_row(self, conflicts, mapping, session_factory):
        assert await conflicts.record(self._detected(mapping)) is True
        assert await conflicts.record(self._detected(mapping)) is False

        pending = await conflicts.list_pending("user-1")
        assert len(pending) == 1
        assert await conflicts.has_pending(mapping.id)

        flagged = (await EventMappingStore(session_factory).list_for_connection(mapping.connection_id))[0]
        assert flagged.sync_status == "conflict"

    @pytest.mark.asyncio
    async def test_auto_resolved_does_not_flag_mapping(self, conflicts, mapping, session_factory):
        await conflicts.record(self._detected(
            mapping,
            resolution_status=ResolutionStatus.AUTO_RESOLVED,
            resolution_action="keep_internal",
        ))

        assert await conflicts.list_pending("user-1") == []
        stored = (await EventMappingStore(session_factory).list_for_connection(mapping.connection_id))[0]
        assert stored.sync_status == "synced"

    @pytest.mark.asyncio
    async def test_keep_internal_acknowledges_external_version(self, conflicts, mapping, session_factory):
        await conflicts.record(self._detected(mapping))
        conflict = (await conflicts.list_pending("user-1"))[0]

        resolved = await conflicts.resolve(conflict.id, "keep_internal")

        assert resolved.resolution_status == "resolved"
        assert resolved.resolved_at is not None
        stored = (await EventMappingStore(session_factory).list_for_connection(mapping.connection_id))[0]
        assert stored.sync_status == "pending"
        assert stored.external_version_hash == content_hash(_event("Chemistry review"))

    @pytest.mark.asyncio
    async def test_keep_external_acknowledges_internal_version(self, conflicts, mapping, session_factory):
        await conflicts.record(self._detected(mapping))
        conflict = (await conflicts.list_pending("user-1"))[0]

        await conflicts.resolve(conflict.id, "keep_external")

        stored = (await EventMappingStore(session_factory).list_for_connection(mapping.connection_id))[0]
        assert stored.internal_version_hash == content_hash(_event("Chem review"))

    @pytest.mark.asyncio
    async def test_resolving_twice_fails(self, conflicts, mapping):
        await conflicts.record(self._detected(mapping))
        conflict = (await conflicts.list_pending("user-1"))[0]
        await conflicts.resolve(conflict.id, "keep_internal")

        with pytest.raises(ValueError, match="already"):
            await conflicts.resolve(conflict.id, "keep_external")
