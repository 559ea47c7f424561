"""Tests for ConnectionService and ChannelRenewalScheduler."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from calendar_sync.auth.encryption import TokenCipher
from calendar_sync.auth.google_oauth import GoogleUserInfo, OAuthTokens
from calendar_sync.integrations.google_calendar.exceptions import (
    GoogleCalendarAuthError,
    GoogleCalendarServiceUnavailableError,
)
from calendar_sync.models import CalendarConnection
from calendar_sync.services.channel_renewal import ChannelRenewalScheduler
from calendar_sync.services.connection_service import ConnectionService
from calendar_sync.services.connection_store import ConnectionStore


@pytest.fixture
def webhook_settings(settings):
    return settings.model_copy(update={
        "webhook_url": "https://sync.example.com/webhooks/google",
        "webhook_token": "secret",
    })


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
def oauth_flow():
    flow = MagicMock()
    flow.get_authorization_url.return_value = "https://accounts.google.com/o/oauth2/v2/auth?state=abc"
    flow.exchange_code = AsyncMock(return_value=OAuthTokens(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_in=3600,
        token_type="Bearer",
        scope="https://www.googleapis.com/auth/calendar",
    ))
    flow.get_user_info = AsyncMock(return_value=GoogleUserInfo(email="student@example.com"))
    return flow


def _service(session_factory, settings, oauth_flow, cipher, client_factory, orchestrator=None):
    return ConnectionService(
        session_factory,
        settings=settings,
        oauth_flow=oauth_flow,
        cipher=cipher,
        token_manager=AsyncMock(),
        client_factory=client_factory,
        orchestrator=orchestrator,
    )


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_stores_encrypted_tokens_and_watches(
        self, session_factory, webhook_settings, oauth_flow, cipher, client_factory, fake_calendar
    ):
        service = _service(session_factory, webhook_settings, oauth_flow, cipher, client_factory)

        connection = await service.connect("user-1", "auth-code")

        oauth_flow.exchange_code.assert_awaited_once_with("auth-code")
        stored = await ConnectionStore(session_factory).get(connection.id)
        assert stored.account_email == "student@example.com"
        assert stored.access_token_encrypted != "access-1"
        assert cipher.decrypt(stored.access_token_encrypted) == "access-1"
        assert cipher.decrypt(stored.refresh_token_encrypted) == "refresh-1"
        assert stored.webhook_channel_id in fake_calendar.channels
        assert fake_calendar.channels[stored.webhook_channel_id].token == "secret"
        assert stored.webhook_expiration is not None

    @pytest.mark.asyncio
    async def test_reconnect_revives_same_connection(
        self, session_factory, settings, oauth_flow, cipher, client_factory
    ):
        service = _service(session_factory, settings, oauth_flow, cipher, client_factory)
        first = await service.connect("user-1", "code-1")
        await service.disconnect(first.id)

        second = await service.connect("user-1", "code-2")

        assert second.id == first.id
        stored = await ConnectionStore(session_factory).get(second.id)
        assert stored.is_active

    @pytest.mark.asyncio
    async def test_watch_failure_keeps_connection(
        self, session_factory, webhook_settings, oauth_flow, cipher, client_factory, fake_calendar
    ):
        fake_calendar.fail_operations["watch"] = GoogleCalendarServiceUnavailableError("unavailable")
        service = _service(session_factory, webhook_settings, oauth_flow, cipher, client_factory)

        connection = await service.connect("user-1", "auth-code")

        stored = await ConnectionStore(session_factory).get(connection.id)
        assert stored.is_active
        assert stored.webhook_channel_id is None

    @pytest.mark.asyncio
    async def test_rejected_code_propagates(self, session_factory, settings, oauth_flow, cipher, client_factory):
        oauth_flow.exchange_code.side_effect = GoogleCalendarAuthError("invalid_grant", status_code=400)
        service = _service(session_factory, settings, oauth_flow, cipher, client_factory)

        with pytest.raises(GoogleCalendarAuthError):
            await service.connect("user-1", "bad-code")


class TestRegisterWebhook:
    @pytest.mark.asyncio
    async def test_replaces_existing_channel(
        self, session_factory, webhook_settings, oauth_flow, cipher, client_factory, fake_calendar, make_connection
    ):
        connection = await make_connection(webhook_channel_id="old-chan", webhook_resource_id="old-res")
        service = _service(session_factory, webhook_settings, oauth_flow, cipher, client_factory)

        channel = await service.register_webhook(connection.id)

        assert fake_calendar.stopped_channels == ["old-chan"]
        stored = await ConnectionStore(session_factory).get(connection.id)
        assert stored.webhook_channel_id == channel.id != "old-chan"
        assert stored.webhook_resource_id == channel.resource_id

    @pytest.mark.asyncio
    async def test_noop_without_webhook_url(
        self, session_factory, settings, oauth_flow, cipher, client_factory, fake_calendar, make_connection
    ):
        connection = await make_connection()
        service = _service(session_factory, settings, oauth_flow, cipher, client_factory)

        assert await service.register_webhook(connection.id) is None
        assert fake_calendar.channels == {}


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_stops_channel_and_clears_credentials(
        self, session_factory, settings, oauth_flow, cipher, client_factory, fake_calendar, make_connection
    ):
        connection = await make_connection(webhook_channel_id="chan-1", webhook_resource_id="res-1")
        orchestrator = MagicMock()
        service = _service(session_factory, settings, oauth_flow, cipher, client_factory, orchestrator)

        assert await service.disconnect(connection.id) is True

        orchestrator.cancel_connection.assert_called_once_with(connection.id)
        orchestrator.cancel_sync.assert_not_called()
        assert fake_calendar.stopped_channels == ["chan-1"]
        assert await ConnectionStore(session_factory).get(connection.id) is None
        async with session_factory() as session:
            stored = await session.get(CalendarConnection, connection.id)
        assert stored.is_deleted
        assert stored.access_token_encrypted is None
        assert stored.refresh_token_encrypted is None
        assert stored.webhook_channel_id is None

    @pytest.mark.asyncio
    async def test_unknown_connection(self, session_factory, settings, oauth_flow, cipher, client_factory):
        service = _service(session_factory, settings, oauth_flow, cipher, client_factory)

        assert await service.disconnect(uuid.uuid4()) is False


class TestChannelRenewal:
    @pytest.mark.asyncio
    async def test_renews_only_channels_inside_buffer(
        self, session_factory, webhook_settings, oauth_flow, cipher, client_factory, fake_calendar, make_connection
    ):
        now = datetime.now(timezone.utc)
        soon = await make_connection(
            webhook_channel_id="chan-soon",
            webhook_resource_id="res-soon",
            webhook_expiration=now + timedelta(hours=3),
        )
        await make_connection(
            webhook_channel_id="chan-later",
            webhook_resource_id="res-later",
            webhook_expiration=now + timedelta(days=5),
        )
        service = _service(session_factory, webhook_settings, oauth_flow, cipher, client_factory)
        scheduler = ChannelRenewalScheduler(session_factory, connection_service=service, settings=webhook_settings)

        assert await scheduler.renew_expiring() == 1

        assert fake_calendar.stopped_channels == ["chan-soon"]
        stored = await ConnectionStore(session_factory).get(soon.id)
        assert stored.webhook_channel_id != "chan-soon"
        assert stored.webhook_expiration > now + timedelta(days=6)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(
        self, session_factory, webhook_settings, oauth_flow, cipher, calendars_by_account, make_connection
    ):
        calendars, factory = calendars_by_account
        soon = datetime.now(timezone.utc) + timedelta(hours=1)
        await make_connection(
            account_email="broken@example.com",
            webhook_channel_id="chan-a",
            webhook_resource_id="res-a",
            webhook_expiration=soon,
        )
        await make_connection(
            account_email="healthy@example.com",
            webhook_channel_id="chan-b",
            webhook_resource_id="res-b",
            webhook_expiration=soon,
        )
        calendars["broken@example.com"].fail_operations["watch"] = GoogleCalendarServiceUnavailableError(
            "unavailable"
        )
        service = _service(session_factory, webhook_settings, oauth_flow, cipher, factory)
        scheduler = ChannelRenewalScheduler(session_factory, connection_service=service, settings=webhook_settings)

        assert await scheduler.renew_expiring() == 1
        assert len(calendars["healthy@example.com"].channels) == 1

    @pytest.mark.asyncio
    async def test_start_is_noop_without_webhooks(self, session_factory, settings, oauth_flow, cipher, client_factory):
        service = _service(session_factory, settings, oauth_flow, cipher, client_factory)
        scheduler = ChannelRenewalScheduler(session_factory, connection_service=service, settings=settings)

        scheduler.start()

        assert scheduler.running is False
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, webhook_settings, oauth_flow, cipher, client_factory):
        service = _service(session_factory, webhook_settings, oauth_flow, cipher, client_factory)
        scheduler = ChannelRenewalScheduler(session_factory, connection_service=service, settings=webhook_settings)

        scheduler.start()
        assert scheduler.running is True

        await scheduler.stop()
        assert scheduler.running is False
