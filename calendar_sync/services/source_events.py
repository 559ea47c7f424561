"""
Read access to the LMS and study-session tables.

The engine never writes these tables; it only needs the upcoming events
and a way to tell a deleted row from one that has merely passed.
"""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.models.sources import LmsCalendarEvent, StudySession
from calendar_sync.sync.canonical import SourceSystem

_MODELS = {
    SourceSystem.LMS: LmsCalendarEvent,
    SourceSystem.INTERNAL: StudySession,
}


class SourceEventReader:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upcoming_lms_events(self, user_id: str, now: datetime) -> list[LmsCalendarEvent]:
        async with self._session_factory() as session:
            stmt = (
                select(LmsCalendarEvent)
                .where(LmsCalendarEvent.user_id == user_id, LmsCalendarEvent.start_at >= now)
                .order_by(LmsCalendarEvent.start_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def upcoming_study_sessions(self, user_id: str, now: datetime) -> list[StudySession]:
        async with self._session_factory() as session:
            stmt = (
                select(StudySession)
                .where(StudySession.user_id == user_id, StudySession.start_time >= now)
                .order_by(StudySession.start_time)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def existing_ids(
        self,
        source_system: SourceSystem,
        user_id: str,
        ids: Iterable[str],
    ) -> set[str]:
        """Subset of `ids` that still exist in the source table, past or future."""
        ids = list(ids)
        if not ids:
            return set()
        model = _MODELS[source_system]
        async with self._session_factory() as session:
            stmt = select(model.id).where(model.user_id == user_id, model.id.in_(ids))
            return set((await session.execute(stmt)).scalars().all())
