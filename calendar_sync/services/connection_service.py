"""
Connection lifecycle: authorize, register push channels, disconnect.
"""

import logging
import uuid
from typing import TYPE_CHECKING, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.auth.encryption import TokenCipher, get_token_cipher
from calendar_sync.auth.google_oauth import GoogleOAuthFlow, get_oauth_flow
from calendar_sync.auth.token_manager import TokenManager
from calendar_sync.config import Settings, get_settings
from calendar_sync.integrations.google_calendar.client import GoogleCalendarClient
from calendar_sync.integrations.google_calendar.exceptions import GoogleCalendarError
from calendar_sync.integrations.google_calendar.types import WatchChannel
from calendar_sync.models.connections import CalendarConnection
from calendar_sync.services.connection_store import ConnectionStore

if TYPE_CHECKING:
    from calendar_sync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

ClientFactory = Callable[[CalendarConnection], GoogleCalendarClient]


class ConnectionService:
    """
    Owns the parts of a connection's life that happen outside sync runs.

    Push channel registration never takes the sync locks; it only touches
    the connection's webhook columns.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        oauth_flow: Optional[GoogleOAuthFlow] = None,
        cipher: Optional[TokenCipher] = None,
        token_manager: Optional[TokenManager] = None,
        client_factory: Optional[ClientFactory] = None,
        orchestrator: Optional["SyncOrchestrator"] = None,
    ):
        self._settings = settings or get_settings()
        self._oauth = oauth_flow or get_oauth_flow()
        self._cipher = cipher or get_token_cipher()
        self._connections = ConnectionStore(session_factory)
        self._token_manager = token_manager or TokenManager(
            session_factory, cipher=self._cipher, oauth_flow=self._oauth
        )
        self._client_factory = client_factory or self._default_client
        self._orchestrator = orchestrator

    def _default_client(self, connection: CalendarConnection) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            self._token_manager.provider_for(connection.id),
            settings=self._settings,
        )

    def authorization_url(self, state: str) -> str:
        return self._oauth.get_authorization_url(state)

    async def connect(self, user_id: str, code: str) -> CalendarConnection:
        """
        Complete the OAuth grant and create (or revive) the connection.

        A push channel is registered when a webhook URL is configured; a
        failure there is logged and does not undo the connection.

        Raises:
            GoogleCalendarAuthError: If the code is rejected
        """
        tokens = await self._oauth.exchange_code(code)
        user_info = await self._oauth.get_user_info(tokens.access_token)

        connection = await self._connections.upsert_on_grant(
            user_id, user_info.email, tokens, self._cipher
        )
        logger.info(f"Connected calendar for user {user_id} ({user_info.email})")

        if self._settings.uses_webhooks:
            try:
                await self.register_webhook(connection.id)
            except GoogleCalendarError as e:
                logger.warning(f"Could not register push channel for {connection.id}: {e}")

        return connection

    async def register_webhook(self, connection_id: uuid.UUID) -> Optional[WatchChannel]:
        """
        Open a new push channel for a connection, replacing the old one.

        Returns:
            The new channel, or None if the connection is gone or webhooks
            are not configured
        """
        if not self._settings.uses_webhooks:
            logger.debug("No webhook URL configured; skipping channel registration")
            return None

        connection = await self._connections.get(connection_id)
        if connection is None or not connection.sync_enabled:
            return None

        async with self._client_factory(connection) as client:
            if connection.has_webhook:
                try:
                    await client.stop_watching(
                        connection.webhook_channel_id, connection.webhook_resource_id
                    )
                except GoogleCalendarError as e:
                    logger.warning(f"Could not stop old channel {connection.webhook_channel_id}: {e}")

            channel = await client.watch_calendar(
                connection.calendar_id,
                self._settings.webhook_url,
                channel_id=str(uuid.uuid4()),
                token=self._settings.webhook_token,
                ttl_seconds=self._settings.webhook_ttl_days * 86400,
            )

        await self._connections.set_webhook(connection.id, channel)
        return channel

    async def disconnect(self, connection_id: uuid.UUID) -> bool:
        """
        Stop syncing a connection and forget its credentials.

        Returns:
            False if the connection does not exist
        """
        connection = await self._connections.get(connection_id)
        if connection is None:
            return False

        if self._orchestrator is not None:
            self._orchestrator.cancel_connection(connection.id)

        if connection.has_webhook:
            try:
                async with self._client_factory(connection) as client:
                    await client.stop_watching(
                        connection.webhook_channel_id, connection.webhook_resource_id
                    )
            except GoogleCalendarError as e:
                logger.warning(f"Could not stop channel for {connection_id}: {e}")

        await self._connections.soft_delete(connection_id)
        logger.info(f"Disconnected calendar connection {connection_id}")
        return True
