"""
Persistence for sync run logs and detected conflicts.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.models.base import utcnow
from calendar_sync.models.conflicts import SyncConflict
from calendar_sync.models.mappings import EventMapping
from calendar_sync.models.sync_log import FINAL_STATUSES, SyncRunLog
from calendar_sync.sync.canonical import (
    CanonicalEvent,
    ConflictType,
    MappingStatus,
    ResolutionStatus,
    content_hash,
)

logger = logging.getLogger(__name__)


def _snapshot_hash(snapshot: dict) -> str:
    return content_hash(CanonicalEvent.from_snapshot(snapshot))


class SyncRunLogStore:
    """Creates, finalizes and queries SyncRunLog rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def start(
        self,
        user_id: str,
        sync_type: str,
        connection_id: Optional[uuid.UUID] = None,
    ) -> SyncRunLog:
        async with self._session_factory() as session:
            run = SyncRunLog(
                user_id=user_id,
                sync_type=sync_type,
                connection_id=connection_id,
                status="started",
                started_at=utcnow(),
            )
            session.add(run)
            await session.commit()
            return run

    async def finalize(self, run_id: uuid.UUID, status: str, **counts) -> SyncRunLog:
        """
        Close a run. A run can be finalized only once.

        Raises:
            ValueError: If the run is unknown or already finalized
        """
        async with self._session_factory() as session:
            run = await session.get(SyncRunLog, run_id)
            if run is None:
                raise ValueError(f"Sync run {run_id} not found")
            run.finalize(status, **counts)
            await session.commit()
            return run

    async def latest_finalized(self, user_id: str) -> Optional[SyncRunLog]:
        """Most recent run for the user that reached a terminal status."""
        async with self._session_factory() as session:
            stmt = (
                select(SyncRunLog)
                .where(
                    SyncRunLog.user_id == user_id,
                    SyncRunLog.status.in_(FINAL_STATUSES),
                )
                .order_by(SyncRunLog.completed_at.desc(), SyncRunLog.started_at.desc())
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()


@dataclass
class DetectedConflict:
    """A conflict found during a pass, persisted in the conflict detection phase."""

    mapping_id: uuid.UUID
    user_id: str
    connection_id: uuid.UUID
    conflict_type: ConflictType
    internal_snapshot: Optional[dict] = None
    external_snapshot: Optional[dict] = None
    internal_changes: list[str] = field(default_factory=list)
    external_changes: list[str] = field(default_factory=list)
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    resolution_action: Optional[str] = None


class SyncConflictStore:
    """Stores conflicts, keeping at most one pending row per mapping."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(self, detected: DetectedConflict, run_id: Optional[uuid.UUID] = None) -> bool:
        """
        Persist a detected conflict and flag its mapping.

        Returns:
            True if a new conflict row was created, False if an existing
            pending conflict for the mapping was refreshed
        """
        async with self._session_factory() as session:
            stmt = select(SyncConflict).where(
                SyncConflict.mapping_id == detected.mapping_id,
                SyncConflict.resolution_status == ResolutionStatus.PENDING.value,
            )
            existing = (await session.execute(stmt)).scalars().first()
            is_pending = detected.resolution_status == ResolutionStatus.PENDING

            if existing is not None:
                conflict = existing
            else:
                conflict = SyncConflict(
                    user_id=detected.user_id,
                    connection_id=detected.connection_id,
                    mapping_id=detected.mapping_id,
                )
                session.add(conflict)

            conflict.sync_run_id = run_id
            conflict.conflict_type = detected.conflict_type.value
            conflict.internal_snapshot = detected.internal_snapshot
            conflict.external_snapshot = detected.external_snapshot
            conflict.internal_changes = list(detected.internal_changes)
            conflict.external_changes = list(detected.external_changes)
            conflict.resolution_status = detected.resolution_status.value
            conflict.resolution_action = detected.resolution_action
            conflict.detected_at = utcnow()
            if not is_pending:
                conflict.resolved_at = utcnow()

            if is_pending:
                mapping = await session.get(EventMapping, detected.mapping_id)
                if mapping is not None:
                    mapping.sync_status = MappingStatus.CONFLICT.value

            await session.commit()

        if existing is None:
            logger.info(
                f"Recorded {detected.conflict_type.value} conflict for mapping {detected.mapping_id}"
            )
        return existing is None

    async def has_pending(self, mapping_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            stmt = select(SyncConflict.id).where(
                SyncConflict.mapping_id == mapping_id,
                SyncConflict.resolution_status == ResolutionStatus.PENDING.value,
            )
            return (await session.execute(stmt)).first() is not None

    async def list_pending(self, user_id: str) -> list[SyncConflict]:
        async with self._session_factory() as session:
            stmt = (
                select(SyncConflict)
                .where(
                    SyncConflict.user_id == user_id,
                    SyncConflict.resolution_status == ResolutionStatus.PENDING.value,
                )
                .order_by(SyncConflict.detected_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def resolve(
        self,
        conflict_id: uuid.UUID,
        action: str,
        status: ResolutionStatus = ResolutionStatus.RESOLVED,
    ) -> SyncConflict:
        """
        Close a pending conflict.

        The losing side's current version is acknowledged on the mapping,
        so the next pass only sees the winning side as changed and carries
        it across. The mapping returns to 'pending' until then.
        """
        async with self._session_factory() as session:
            conflict = await session.get(SyncConflict, conflict_id)
            if conflict is None:
                raise ValueError(f"Conflict {conflict_id} not found")
            if conflict.resolution_status != ResolutionStatus.PENDING.value:
                raise ValueError(f"Conflict {conflict_id} is already {conflict.resolution_status}")

            conflict.resolution_status = status.value
            conflict.resolution_action = action
            conflict.resolved_at = utcnow()

            mapping = await session.get(EventMapping, conflict.mapping_id)
            if mapping is not None and mapping.sync_status == MappingStatus.CONFLICT.value:
                mapping.sync_status = MappingStatus.PENDING.value
                if action == "keep_internal" and conflict.external_snapshot:
                    mapping.external_version_hash = _snapshot_hash(conflict.external_snapshot)
                elif action == "keep_external" and conflict.internal_snapshot:
                    mapping.internal_version_hash = _snapshot_hash(conflict.internal_snapshot)

            await session.commit()
            return conflict
