"""
Persistence for calendar connections.

Queries and state transitions used by the sync orchestrator, the
connection service and the webhook renewal scheduler.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.auth.encryption import TokenCipher
from calendar_sync.auth.google_oauth import OAuthTokens
from calendar_sync.auth.token_manager import store_tokens
from calendar_sync.integrations.google_calendar.types import WatchChannel
from calendar_sync.models.base import utcnow
from calendar_sync.models.connections import CalendarConnection

logger = logging.getLogger(__name__)


class ConnectionStore:
    """Reads and writes CalendarConnection rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, connection_id: uuid.UUID) -> Optional[CalendarConnection]:
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
        if connection is None or connection.is_deleted:
            return None
        return connection

    async def list_active_for_user(self, user_id: str) -> list[CalendarConnection]:
        """Connections that take part in sync runs, oldest first."""
        async with self._session_factory() as session:
            stmt = (
                select(CalendarConnection)
                .where(
                    CalendarConnection.user_id == user_id,
                    CalendarConnection.sync_enabled.is_(True),
                    CalendarConnection.deleted_at.is_(None),
                )
                .order_by(CalendarConnection.created_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def get_by_channel_id(self, channel_id: str) -> Optional[CalendarConnection]:
        async with self._session_factory() as session:
            stmt = select(CalendarConnection).where(
                CalendarConnection.webhook_channel_id == channel_id,
                CalendarConnection.deleted_at.is_(None),
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_expiring_channels(self, before: datetime) -> list[CalendarConnection]:
        """Active connections whose channel expires before `before`."""
        async with self._session_factory() as session:
            stmt = select(CalendarConnection).where(
                CalendarConnection.webhook_channel_id.is_not(None),
                CalendarConnection.webhook_expiration < before,
                CalendarConnection.sync_enabled.is_(True),
                CalendarConnection.deleted_at.is_(None),
            )
            return list((await session.execute(stmt)).scalars().all())

    async def record_sync_result(
        self,
        connection_id: uuid.UUID,
        status: str,
        error: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        """Store the outcome of a sync attempt ('success', 'partial' or 'error')."""
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
            if connection is None:
                logger.warning(f"Cannot record sync result; connection {connection_id} is gone")
                return
            connection.last_sync_at = synced_at or utcnow()
            connection.last_sync_status = status
            connection.last_sync_error = error
            await session.commit()

    async def disable(self, connection_id: uuid.UUID, error: str) -> None:
        """Stop syncing a connection and surface why."""
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
            if connection is None:
                return
            connection.sync_enabled = False
            connection.last_sync_status = "error"
            connection.last_sync_error = error
            connection.clear_webhook()
            await session.commit()
        logger.warning(f"Disabled connection {connection_id}: {error}")

    async def set_webhook(self, connection_id: uuid.UUID, channel: WatchChannel) -> None:
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
            if connection is None:
                return
            connection.set_webhook(channel.id, channel.resource_id, channel.expires_at)
            await session.commit()

    async def clear_webhook(self, connection_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
            if connection is None:
                return
            connection.clear_webhook()
            await session.commit()

    async def soft_delete(self, connection_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            connection = await session.get(CalendarConnection, connection_id)
            if connection is None or connection.is_deleted:
                return
            connection.sync_enabled = False
            connection.access_token_encrypted = None
            connection.refresh_token_encrypted = None
            connection.clear_webhook()
            connection.soft_delete()
            await session.commit()

    async def upsert_on_grant(
        self,
        user_id: str,
        account_email: str,
        tokens: OAuthTokens,
        cipher: TokenCipher,
        *,
        calendar_id: str = "primary",
        calendar_timezone: Optional[str] = None,
    ) -> CalendarConnection:
        """
        Create or reactivate the connection for a fresh authorization grant.

        A previously disconnected connection for the same account and
        calendar is revived rather than duplicated.
        """
        async with self._session_factory() as session:
            stmt = select(CalendarConnection).where(
                CalendarConnection.user_id == user_id,
                CalendarConnection.account_email == account_email,
                CalendarConnection.calendar_id == calendar_id,
            )
            connection = (await session.execute(stmt)).scalar_one_or_none()

            if connection is None:
                connection = CalendarConnection(
                    user_id=user_id,
                    account_email=account_email,
                    calendar_id=calendar_id,
                )
                session.add(connection)
                logger.info(f"Creating connection for user {user_id} ({account_email})")
            else:
                connection.deleted_at = None
                logger.info(f"Updating connection {connection.id} for user {user_id}")

            connection.sync_enabled = True
            connection.last_sync_error = None
            if calendar_timezone:
                connection.calendar_timezone = calendar_timezone
            store_tokens(connection, tokens, cipher)

            await session.commit()
            return connection
