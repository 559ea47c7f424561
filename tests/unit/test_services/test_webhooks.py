"""Tests for push notification handling in SyncOrchestrator."""

from datetime import datetime, timedelta, timezone

import pytest

from calendar_sync.integrations.google_calendar.types import WebhookNotification
from calendar_sync.services.connection_store import ConnectionStore
from calendar_sync.services.mapping_store import EventMappingStore
from calendar_sync.services.sync_orchestrator import CALENDAR_DELETED_MESSAGE, SyncOrchestrator


async def no_sleep(seconds: float) -> None:
    return None


def _notification(state: str = "exists", channel_id: str = "chan-1", token: str = "secret") -> WebhookNotification:
    return WebhookNotification(
        channel_id=channel_id,
        resource_id="resource-1",
        resource_state=state,
        token=token,
        message_number=2,
    )


@pytest.fixture
def orchestrator(session_factory, settings, token_manager, client_factory) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory,
        settings=settings.model_copy(update={"webhook_token": "secret"}),
        token_manager=token_manager,
        client_factory=client_factory,
        sleep=no_sleep,
    )


@pytest.fixture
def watched_connection(make_connection):
    async def _make(**overrides):
        return await make_connection(
            webhook_channel_id="chan-1",
            webhook_resource_id="resource-1",
            webhook_expiration=datetime.now(timezone.utc) + timedelta(days=5),
            **overrides,
        )

    return _make


class TestIgnoredNotifications:
    @pytest.mark.asyncio
    async def test_sync_handshake(self, orchestrator, watched_connection, fake_calendar):
        await watched_connection()

        assert await orchestrator.handle_webhook(_notification("sync")) is None
        assert fake_calendar.calls == []

    @pytest.mark.asyncio
    async def test_unknown_channel(self, orchestrator, watched_connection, fake_calendar):
        await watched_connection()

        assert await orchestrator.handle_webhook(_notification(channel_id="chan-other")) is None
        assert fake_calendar.calls == []

    @pytest.mark.asyncio
    async def test_token_mismatch(self, orchestrator, watched_connection, fake_calendar):
        await watched_connection()

        assert await orchestrator.handle_webhook(_notification(token="forged")) is None
        assert fake_calendar.calls == []

    @pytest.mark.asyncio
    async def test_disabled_connection(self, orchestrator, watched_connection, fake_calendar):
        await watched_connection(sync_enabled=False)

        assert await orchestrator.handle_webhook(_notification()) is None
        assert fake_calendar.calls == []


class TestCalendarDeleted:
    @pytest.mark.asyncio
    async def test_not_exists_disables_connection(self, orchestrator, session_factory, watched_connection):
        connection = await watched_connection()

        assert await orchestrator.handle_webhook(_notification("not_exists")) is None

        stored = await ConnectionStore(session_factory).get(connection.id)
        assert stored.sync_enabled is False
        assert stored.last_sync_status == "error"
        assert stored.last_sync_error == CALENDAR_DELETED_MESSAGE
        assert stored.webhook_channel_id is None


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_exists_imports_changes(self, orchestrator, session_factory, watched_connection, fake_calendar):
        connection = await watched_connection()
        event = fake_calendar.add_external("Team meeting", datetime.now(timezone.utc) + timedelta(days=1))

        report = await orchestrator.handle_webhook(_notification())

        assert report.sync_type == "incremental"
        assert report.status == "completed"
        assert report.stats.events_created == 1
        mapping = await EventMappingStore(session_factory).get(
            "user-1", connection.id, "external", event.id
        )
        assert mapping.snapshot["title"] == "Team meeting"

    @pytest.mark.asyncio
    async def test_incremental_sees_cancellations(
        self, orchestrator, session_factory, watched_connection, fake_calendar
    ):
        connection = await watched_connection()
        event = fake_calendar.add_external("Team meeting", datetime.now(timezone.utc) + timedelta(days=1))
        await orchestrator.handle_webhook(_notification())

        fake_calendar.cancel(event.id)
        report = await orchestrator.handle_webhook(_notification())

        assert report.stats.events_deleted == 1
        assert await EventMappingStore(session_factory).list_for_connection(connection.id) == []

    @pytest.mark.asyncio
    async def test_incremental_does_not_push_sources(
        self, orchestrator, watched_connection, add_lms_event, fake_calendar
    ):
        await watched_connection()
        await add_lms_event()

        report = await orchestrator.handle_webhook(_notification())

        assert report.stats.events_created == 0
        assert fake_calendar.engine_events() == []

    @pytest.mark.asyncio
    async def test_busy_connection_defers_and_coalesces(
        self, orchestrator, session_factory, watched_connection, fake_calendar
    ):
        connection = await watched_connection()
        fake_calendar.add_external("Team meeting", datetime.now(timezone.utc) + timedelta(days=1))

        async with orchestrator._connection_locks.hold(connection.id):
            assert await orchestrator.handle_webhook(_notification()) is None
            assert await orchestrator.handle_webhook(_notification()) is None
            assert list(orchestrator._deferred) == [connection.id]
            assert fake_calendar.calls == []

        await orchestrator._drain_deferred(connection.id)

        assert orchestrator._deferred == {}
        assert [c for c in fake_calendar.calls if c[0] == "list"] == [("list", None)]
        status = await orchestrator.get_last_sync_status("user-1")
        assert status.sync_type == "incremental"
        assert status.stats.events_created == 1
