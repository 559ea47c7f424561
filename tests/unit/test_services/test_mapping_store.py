"""Tests for EventMappingStore."""

import pytest

from calendar_sync.exceptions import MappingStoreError
from calendar_sync.services.connection_store import ConnectionStore
from calendar_sync.services.mapping_store import EventMappingStore


@pytest.fixture
def store(session_factory) -> EventMappingStore:
    return EventMappingStore(session_factory)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_second_upsert_updates_same_row(self, store, make_connection):
        connection = await make_connection()

        first = await store.upsert("user-1", connection.id, "lms", "lms-1", external_event_id="gcal-1")
        second = await store.upsert("user-1", connection.id, "lms", "lms-1", sync_status="synced")

        assert first.id == second.id
        mappings = await store.list_for_connection(connection.id)
        assert len(mappings) == 1
        assert mappings[0].external_event_id == "gcal-1"
        assert mappings[0].sync_status == "synced"

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, store, make_connection):
        connection = await make_connection()

        with pytest.raises(ValueError, match="Unknown mapping fields"):
            await store.upsert("user-1", connection.id, "lms", "lms-1", color="red")

    @pytest.mark.asyncio
    async def test_requires_live_connection(self, store, session_factory, make_connection):
        connection = await make_connection()
        await ConnectionStore(session_factory).soft_delete(connection.id)

        with pytest.raises(MappingStoreError):
            await store.upsert("user-1", connection.id, "lms", "lms-1")

    @pytest.mark.asyncio
    async def test_lookup_by_external_id(self, store, make_connection):
        connection = await make_connection()
        await store.upsert("user-1", connection.id, "internal", "study-1", external_event_id="gcal-9")

        found = await store.get_by_external_id(connection.id, "gcal-9")

        assert found is not None
        assert found.source_id == "study-1"


class TestMarkDeleted:
    @pytest.mark.asyncio
    async def test_one_side_keeps_row(self, store, make_connection):
        connection = await make_connection()
        mapping = await store.upsert("user-1", connection.id, "lms", "lms-1")

        updated = await store.mark_deleted(mapping.id, side="internal")

        assert updated.internal_deleted is True
        assert updated.is_deleted is False
        assert len(await store.list_for_connection(connection.id)) == 1

    @pytest.mark.asyncio
    async def test_both_sides_soft_delete(self, store, make_connection):
        connection = await make_connection()
        mapping = await store.upsert("user-1", connection.id, "lms", "lms-1")

        await store.mark_deleted(mapping.id, side="internal")
        final = await store.mark_deleted(mapping.id, side="external")

        assert final.is_deleted is True
        assert await store.list_for_connection(connection.id) == []
        assert len(await store.list_for_connection(connection.id, include_deleted=True)) == 1

    @pytest.mark.asyncio
    async def test_invalid_side(self, store, make_connection):
        connection = await make_connection()
        mapping = await store.upsert("user-1", connection.id, "lms", "lms-1")

        with pytest.raises(ValueError):
            await store.mark_deleted(mapping.id, side="both")
