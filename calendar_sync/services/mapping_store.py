"""
Persistence for event mappings.

Every method runs as its own unit of work. Mappings always belong to a
live connection; writes against a missing or soft-deleted connection fail.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.exceptions import MappingStoreError
from calendar_sync.models.base import utcnow
from calendar_sync.models.connections import CalendarConnection
from calendar_sync.models.mappings import EventMapping
from calendar_sync.sync.canonical import SourceSystem

logger = logging.getLogger(__name__)

_WRITABLE_FIELDS = frozenset({
    "external_event_id",
    "internal_version_hash",
    "external_version_hash",
    "snapshot",
    "sync_status",
    "last_modified_by",
    "last_synced_at",
    "internal_deleted",
    "external_deleted",
    "deleted_at",
})


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - _WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown mapping fields: {sorted(unknown)}")


class EventMappingStore:
    """Reads and writes EventMapping rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _require_live_connection(self, session: AsyncSession, connection_id: uuid.UUID) -> None:
        connection = await session.get(CalendarConnection, connection_id)
        if connection is None or connection.is_deleted:
            raise MappingStoreError(f"Connection {connection_id} does not exist")

    async def get(
        self,
        user_id: str,
        connection_id: uuid.UUID,
        source_system: SourceSystem | str,
        source_id: str,
    ) -> Optional[EventMapping]:
        async with self._session_factory() as session:
            stmt = select(EventMapping).where(
                EventMapping.user_id == user_id,
                EventMapping.connection_id == connection_id,
                EventMapping.source_system == SourceSystem(source_system).value,
                EventMapping.source_id == source_id,
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def get_by_external_id(
        self,
        connection_id: uuid.UUID,
        external_event_id: str,
    ) -> Optional[EventMapping]:
        async with self._session_factory() as session:
            stmt = select(EventMapping).where(
                EventMapping.connection_id == connection_id,
                EventMapping.external_event_id == external_event_id,
            )
            return (await session.execute(stmt)).scalars().first()

    async def list_for_connection(
        self,
        connection_id: uuid.UUID,
        *,
        source_system: SourceSystem | str | None = None,
        include_deleted: bool = False,
    ) -> list[EventMapping]:
        async with self._session_factory() as session:
            stmt = select(EventMapping).where(EventMapping.connection_id == connection_id)
            if source_system is not None:
                stmt = stmt.where(EventMapping.source_system == SourceSystem(source_system).value)
            if not include_deleted:
                stmt = stmt.where(EventMapping.deleted_at.is_(None))
            return list((await session.execute(stmt)).scalars().all())

    async def upsert(
        self,
        user_id: str,
        connection_id: uuid.UUID,
        source_system: SourceSystem | str,
        source_id: str,
        **fields: Any,
    ) -> EventMapping:
        """
        Insert a mapping or update the existing one for the same source event.

        The unique (user, connection, source system, source id) constraint
        decides: a concurrent insert that loses the race falls back to an
        update of the winner's row.
        """
        _check_fields(fields)
        source_value = SourceSystem(source_system).value

        async with self._session_factory() as session:
            await self._require_live_connection(session, connection_id)
            mapping = EventMapping(
                user_id=user_id,
                connection_id=connection_id,
                source_system=source_value,
                source_id=source_id,
                **fields,
            )
            session.add(mapping)
            try:
                await session.commit()
                return mapping
            except IntegrityError:
                await session.rollback()
                logger.debug(f"Mapping {source_value}:{source_id} exists; updating")

        existing = await self.get(user_id, connection_id, source_value, source_id)
        if existing is None:
            raise MappingStoreError(
                f"Mapping {source_value}:{source_id} violated a constraint but could not be found"
            )
        return await self.update(existing.id, **fields)

    async def update(self, mapping_id: uuid.UUID, **fields: Any) -> EventMapping:
        _check_fields(fields)
        async with self._session_factory() as session:
            mapping = await session.get(EventMapping, mapping_id)
            if mapping is None:
                raise MappingStoreError(f"Mapping {mapping_id} not found")
            await self._require_live_connection(session, mapping.connection_id)
            for name, value in fields.items():
                setattr(mapping, name, value)
            await session.commit()
            return mapping

    async def mark_deleted(self, mapping_id: uuid.UUID, *, side: str) -> EventMapping:
        """
        Tombstone one side of a mapping.

        Once both sides are gone the row itself is soft-deleted.
        """
        if side not in ("internal", "external"):
            raise ValueError(f"Invalid side: {side}")

        async with self._session_factory() as session:
            mapping = await session.get(EventMapping, mapping_id)
            if mapping is None:
                raise MappingStoreError(f"Mapping {mapping_id} not found")
            if side == "internal":
                mapping.internal_deleted = True
            else:
                mapping.external_deleted = True
            mapping.last_synced_at = utcnow()
            if mapping.internal_deleted and mapping.external_deleted:
                mapping.soft_delete()
            await session.commit()
            return mapping
