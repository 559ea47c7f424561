"""Tests for access token lookup and the central refresh path."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from calendar_sync.auth.encryption import TokenCipher
from calendar_sync.auth.google_oauth import OAuthTokens
from calendar_sync.auth.token_manager import TokenManager
from calendar_sync.integrations.google_calendar.exceptions import (
    AuthExpiredError,
    GoogleCalendarAuthError,
)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
def oauth_flow():
    flow = MagicMock()
    flow.refresh_token = AsyncMock(return_value=OAuthTokens(
        access_token="fresh-access",
        refresh_token="refresh-1",
        expires_in=3600,
        token_type="Bearer",
        scope="https://www.googleapis.com/auth/calendar",
    ))
    return flow


@pytest.fixture
def manager(session_factory, cipher, oauth_flow) -> TokenManager:
    return TokenManager(session_factory, cipher=cipher, oauth_flow=oauth_flow)


class TestAccessToken:
    @pytest.mark.asyncio
    async def test_returns_decrypted_token(self, manager, cipher, make_connection):
        connection = await make_connection(access_token_encrypted=cipher.encrypt("valid-access"))

        assert await manager.access_token_for(connection.id) == "valid-access"

    @pytest.mark.asyncio
    async def test_expired_with_refresh_token(self, manager, cipher, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=cipher.encrypt("refresh-1"),
            token_expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        with pytest.raises(AuthExpiredError):
            await manager.access_token_for(connection.id)

    @pytest.mark.asyncio
    async def test_inside_refresh_margin_counts_as_expired(self, manager, cipher, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=cipher.encrypt("refresh-1"),
            token_expiry=datetime.now(timezone.utc) + timedelta(minutes=2),
        )

        with pytest.raises(AuthExpiredError):
            await manager.access_token_for(connection.id)

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_needs_reconnect(self, manager, cipher, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=None,
            token_expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        with pytest.raises(GoogleCalendarAuthError) as exc_info:
            await manager.access_token_for(connection.id)
        assert not isinstance(exc_info.value, AuthExpiredError)

    @pytest.mark.asyncio
    async def test_provider_binds_connection(self, manager, cipher, make_connection):
        connection = await make_connection(access_token_encrypted=cipher.encrypt("bound"))
        provide = manager.provider_for(connection.id)

        assert await provide() == "bound"


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_stores_new_token(self, manager, cipher, oauth_flow, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=cipher.encrypt("refresh-1"),
            token_expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        token = await manager.refresh(connection.id)

        assert token == "fresh-access"
        oauth_flow.refresh_token.assert_awaited_once_with("refresh-1")
        assert await manager.access_token_for(connection.id) == "fresh-access"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_hit_provider_once(self, manager, cipher, oauth_flow, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=cipher.encrypt("refresh-1"),
            token_expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        async def slow_refresh(refresh_token):
            await asyncio.sleep(0.01)
            return oauth_flow.refresh_token.return_value

        oauth_flow.refresh_token.side_effect = slow_refresh

        results = await asyncio.gather(*(manager.refresh(connection.id) for _ in range(3)))

        assert results == ["fresh-access"] * 3
        assert oauth_flow.refresh_token.await_count == 1

    @pytest.mark.asyncio
    async def test_revoked_grant_propagates(self, manager, cipher, oauth_flow, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=cipher.encrypt("refresh-1"),
        )
        oauth_flow.refresh_token.side_effect = GoogleCalendarAuthError("invalid_grant")

        with pytest.raises(GoogleCalendarAuthError):
            await manager.refresh(connection.id)

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, manager, cipher, make_connection):
        connection = await make_connection(
            access_token_encrypted=cipher.encrypt("old"),
            refresh_token_encrypted=None,
        )

        with pytest.raises(GoogleCalendarAuthError):
            await manager.refresh(connection.id)
