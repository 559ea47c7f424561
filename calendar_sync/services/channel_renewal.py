"""
Periodic renewal of push notification channels.

Google channels expire after their TTL. Channels close to expiry are
replaced with fresh ones so notifications keep arriving.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.config import Settings, get_settings
from calendar_sync.models.base import utcnow
from calendar_sync.services.connection_service import ConnectionService
from calendar_sync.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)


class ChannelRenewalScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        connection_service: ConnectionService,
        settings: Optional[Settings] = None,
    ):
        self._settings = settings or get_settings()
        self._connections = ConnectionStore(session_factory)
        self._service = connection_service
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def renew_expiring(self) -> int:
        """
        Replace every channel expiring within the renewal buffer.

        Returns:
            Number of channels renewed
        """
        cutoff = utcnow() + timedelta(hours=self._settings.webhook_renewal_buffer_hours)
        connections = await self._connections.list_expiring_channels(cutoff)
        renewed = 0

        for connection in connections:
            try:
                channel = await self._service.register_webhook(connection.id)
            except Exception as e:
                logger.error(f"Failed to renew channel for connection {connection.id}: {e}")
                continue
            if channel is not None:
                renewed += 1

        if connections:
            logger.info(f"Renewed {renewed}/{len(connections)} expiring push channels")
        return renewed

    async def _loop(self) -> None:
        interval = self._settings.webhook_renewal_interval_minutes * 60
        while True:
            try:
                await self.renew_expiring()
            except Exception as e:
                logger.error(f"Channel renewal pass failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self.running:
            return
        if not self._settings.uses_webhooks:
            logger.info("Webhooks not configured; channel renewal disabled")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Channel renewal scheduler started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Channel renewal scheduler stopped")
