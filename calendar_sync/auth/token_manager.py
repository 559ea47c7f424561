"""
Credential lifecycle for calendar connections.

Provides access tokens to the calendar client and owns the single code
path that refreshes them. Refreshes are serialized per connection so
concurrent callers that all saw an expired token trigger one refresh.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.auth.encryption import TokenCipher, get_token_cipher
from calendar_sync.auth.google_oauth import GoogleOAuthFlow, OAuthTokens, get_oauth_flow
from calendar_sync.integrations.google_calendar.client import TokenProvider
from calendar_sync.integrations.google_calendar.exceptions import (
    AuthExpiredError,
    GoogleCalendarAuthError,
)
from calendar_sync.models.base import as_utc
from calendar_sync.models.connections import CalendarConnection
from calendar_sync.services.locks import KeyedLock

logger = logging.getLogger(__name__)


def store_tokens(connection: CalendarConnection, tokens: OAuthTokens, cipher: TokenCipher) -> None:
    """Write freshly issued tokens onto a connection (caller commits)."""
    connection.access_token_encrypted = cipher.encrypt(tokens.access_token)
    if tokens.refresh_token:
        connection.refresh_token_encrypted = cipher.encrypt(tokens.refresh_token)
    connection.token_expiry = tokens.expiry
    if tokens.scope:
        connection.scopes = tokens.scope


class TokenManager:
    """
    Hands out decrypted access tokens and refreshes expired ones.

    access_token_for() never refreshes; it raises AuthExpiredError so the
    caller can go through refresh(), which is the only refresh path.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cipher: Optional[TokenCipher] = None,
        oauth_flow: Optional[GoogleOAuthFlow] = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher or get_token_cipher()
        self._oauth = oauth_flow or get_oauth_flow()
        self._refresh_locks = KeyedLock()

    async def _load(self, connection_id: uuid.UUID) -> CalendarConnection:
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
        if connection is None or connection.is_deleted:
            raise GoogleCalendarAuthError(f"Connection {connection_id} not found")
        return connection

    async def access_token_for(self, connection_id: uuid.UUID) -> str:
        """
        Decrypted access token for a connection.

        Raises:
            AuthExpiredError: Token expired (or missing) but a refresh token exists
            GoogleCalendarAuthError: No usable credentials; the user must reconnect
        """
        connection = await self._load(connection_id)
        can_refresh = connection.refresh_token_encrypted is not None

        if connection.access_token_encrypted is None or connection.is_token_expired:
            if can_refresh:
                raise AuthExpiredError(f"Access token expired for connection {connection_id}")
            raise GoogleCalendarAuthError(
                f"Connection {connection_id} has no usable credentials"
            )
        return self._cipher.decrypt(connection.access_token_encrypted)

    def provider_for(self, connection_id: uuid.UUID) -> TokenProvider:
        """Token provider bound to one connection, for GoogleCalendarClient."""
        async def provide() -> str:
            return await self.access_token_for(connection_id)

        return provide

    async def refresh(self, connection_id: uuid.UUID) -> str:
        """
        Refresh a connection's access token.

        If another task refreshed while this one waited for the lock, the
        token it stored is returned without a second refresh.

        Raises:
            GoogleCalendarAuthError: Refresh token missing or rejected (invalid_grant)
        """
        seen_expiry = as_utc((await self._load(connection_id)).token_expiry)

        async with self._refresh_locks.hold(connection_id):
            async with self._session_factory() as session:
                connection = await session.get(CalendarConnection, connection_id)
                if connection is None or connection.is_deleted:
                    raise GoogleCalendarAuthError(f"Connection {connection_id} not found")

                if (
                    as_utc(connection.token_expiry) != seen_expiry
                    and connection.access_token_encrypted is not None
                    and not connection.is_token_expired
                ):
                    logger.debug(f"Token for connection {connection_id} already refreshed")
                    return self._cipher.decrypt(connection.access_token_encrypted)

                refresh_token = self._cipher.decrypt(connection.refresh_token_encrypted)
                if not refresh_token:
                    raise GoogleCalendarAuthError(
                        f"Connection {connection_id} has no refresh token"
                    )

                tokens = await self._oauth.refresh_token(refresh_token)
                store_tokens(connection, tokens, self._cipher)
                await session.commit()

        logger.info(f"Refreshed access token for connection {connection_id}")
        return tokens.access_token
