"""
Pytest configuration and fixtures for calendar sync tests.

Provides an in-memory async database, factories for connections and
source rows, and an in-memory stand-in for the Google Calendar client.
"""

import itertools
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from calendar_sync.config import Settings
from calendar_sync.database import create_session_factory
from calendar_sync.integrations.google_calendar.exceptions import GoogleCalendarNotFoundError
from calendar_sync.integrations.google_calendar.types import EventPage, GoogleEvent, WatchChannel
from calendar_sync.models import Base, CalendarConnection, LmsCalendarEvent, StudySession
from calendar_sync.models.base import as_utc
from calendar_sync.services.sync_orchestrator import SyncOrchestrator


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any .env file."""
    return Settings(
        _env_file=None,
        python_env="test",
        database_url="sqlite://",
        retry_initial_delay_seconds=0,
        retry_max_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    In-memory SQLite engine shared across sessions of one test.

    StaticPool keeps the single connection alive so every session sees
    the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Enable foreign key constraints for SQLite connections."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def make_connection(session_factory):
    """
    Factory for persisted CalendarConnection rows.

    Returns:
        async callable(user_id="user-1", **overrides) -> CalendarConnection
    """
    counter = itertools.count(1)

    async def _make(user_id: str = "user-1", **overrides) -> CalendarConnection:
        n = next(counter)
        values = {
            "user_id": user_id,
            "account_email": f"student{n}@example.com",
            "calendar_id": "primary",
            "access_token_encrypted": "encrypted-access",
            "refresh_token_encrypted": "encrypted-refresh",
            "token_expiry": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        values.update(overrides)
        async with session_factory() as session:
            connection = CalendarConnection(**values)
            session.add(connection)
            await session.commit()
            return connection

    return _make


@pytest.fixture
def add_lms_event(session_factory):
    """Factory for LMS source rows starting in the future by default."""
    counter = itertools.count(1)

    async def _add(user_id: str = "user-1", **overrides) -> LmsCalendarEvent:
        n = next(counter)
        start = datetime.now(timezone.utc) + timedelta(days=n)
        values = {
            "id": f"lms-{n}",
            "user_id": user_id,
            "lms_id": f"canvas-{n}",
            "title": f"Assignment {n}",
            "start_at": start,
            "end_at": start + timedelta(hours=1),
            "event_type": "assignment",
            "course_name": "Biology 101",
        }
        values.update(overrides)
        async with session_factory() as session:
            row = LmsCalendarEvent(**values)
            session.add(row)
            await session.commit()
            return row

    return _add


@pytest.fixture
def add_study_session(session_factory):
    counter = itertools.count(1)

    async def _add(user_id: str = "user-1", **overrides) -> StudySession:
        n = next(counter)
        start = datetime.now(timezone.utc) + timedelta(days=n, hours=2)
        values = {
            "id": f"study-{n}",
            "user_id": user_id,
            "title": f"Study block {n}",
            "start_time": start,
            "end_time": start + timedelta(minutes=45),
        }
        values.update(overrides)
        async with session_factory() as session:
            row = StudySession(**values)
            session.add(row)
            await session.commit()
            return row

    return _add


class FakeCalendar:
    """
    In-memory calendar backing FakeCalendarClient instances.

    Events round-trip through the same JSON shape the real API uses.
    Failures can be injected per event title or operation.
    """

    def __init__(self):
        self.events: dict[str, GoogleEvent] = {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.fail_titles: dict[str, Exception] = {}
        self.fail_operations: dict[str, Exception] = {}
        self.channels: dict[str, WatchChannel] = {}
        self.stopped_channels: list[str] = []
        self.closed = 0
        self._ids = itertools.count(1)

    def _maybe_fail(self, operation: str, event: Optional[GoogleEvent] = None) -> None:
        if operation in self.fail_operations:
            raise self.fail_operations[operation]
        if event is not None:
            for title, error in self.fail_titles.items():
                if event.summary and title in event.summary:
                    raise error

    def _store(self, event_id: str, data: dict) -> GoogleEvent:
        stored = GoogleEvent.model_validate({**data, "id": event_id, "status": data.get("status", "confirmed")})
        self.events[event_id] = stored
        return stored

    def add_external(self, summary: str, start: datetime, **fields) -> GoogleEvent:
        """Simulate an event the user created directly in Google Calendar."""
        event_id = f"ext-{next(self._ids)}"
        data = {
            "summary": summary,
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": (start + timedelta(hours=1)).isoformat()},
            **fields,
        }
        return self._store(event_id, data)

    def edit(self, event_id: str, **fields) -> GoogleEvent:
        """Simulate the user editing an event in Google Calendar."""
        data = self.events[event_id].to_api()
        data.update(fields)
        return self._store(event_id, data)

    def cancel(self, event_id: str) -> None:
        self.edit(event_id, status="cancelled")

    def engine_events(self) -> list[GoogleEvent]:
        return [
            e for e in self.events.values()
            if e.private_properties.get("source") and not e.is_cancelled
        ]

    def _in_window(self, event: GoogleEvent, time_min, time_max) -> bool:
        if event.start is None or event.start.date_time is None:
            return True
        start = as_utc(event.start.date_time)
        if time_min is not None and start < as_utc(time_min):
            return False
        if time_max is not None and start >= as_utc(time_max):
            return False
        return True


class FakeCalendarClient:
    """Implements the subset of GoogleCalendarClient the engine calls."""

    def __init__(self, calendar: FakeCalendar):
        self.calendar = calendar

    async def aclose(self) -> None:
        self.calendar.closed += 1

    async def __aenter__(self) -> "FakeCalendarClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def get_events(self, calendar_id, *, time_min=None, time_max=None, updated_min=None, **kwargs) -> EventPage:
        self.calendar.calls.append(("list", None))
        self.calendar._maybe_fail("list")
        items = [
            e for e in self.calendar.events.values()
            if self.calendar._in_window(e, time_min, time_max)
            and (updated_min is not None or not e.is_cancelled)
        ]
        return EventPage(items=items)

    async def get_event(self, calendar_id, event_id) -> GoogleEvent:
        self.calendar.calls.append(("get", event_id))
        if event_id not in self.calendar.events:
            raise GoogleCalendarNotFoundError("Event or calendar not found", status_code=404)
        return self.calendar.events[event_id]

    async def create_event(self, calendar_id, event: GoogleEvent, *, send_updates="none") -> GoogleEvent:
        assert send_updates == "none"
        self.calendar.calls.append(("create", event.summary))
        self.calendar._maybe_fail("create", event)
        return self.calendar._store(f"gcal-{next(self.calendar._ids)}", event.to_api())

    async def patch_event(self, calendar_id, event_id, event, *, send_updates="none") -> GoogleEvent:
        assert send_updates == "none"
        self.calendar.calls.append(("patch", event_id))
        body = event.to_api() if isinstance(event, GoogleEvent) else event
        self.calendar._maybe_fail("patch", event if isinstance(event, GoogleEvent) else None)
        existing = self.calendar.events.get(event_id)
        if existing is None or existing.is_cancelled:
            raise GoogleCalendarNotFoundError("Event or calendar not found", status_code=404)
        data = existing.to_api()
        data.update(body)
        return self.calendar._store(event_id, data)

    async def delete_event(self, calendar_id, event_id, *, send_updates="none") -> bool:
        assert send_updates == "none"
        self.calendar.calls.append(("delete", event_id))
        self.calendar._maybe_fail("delete")
        if event_id not in self.calendar.events:
            return False
        self.calendar.cancel(event_id)
        return True

    async def watch_calendar(self, calendar_id, webhook_url, *, channel_id=None, token=None, ttl_seconds=None) -> WatchChannel:
        self.calendar._maybe_fail("watch")
        channel_id = channel_id or str(uuid.uuid4())
        expires = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds or 604800)
        channel = WatchChannel(
            id=channel_id,
            resource_id=f"resource-{channel_id[:8]}",
            token=token,
            expiration=int(expires.timestamp() * 1000),
        )
        self.calendar.channels[channel_id] = channel
        return channel

    async def stop_watching(self, channel_id, resource_id) -> None:
        self.calendar._maybe_fail("stop")
        self.calendar.stopped_channels.append(channel_id)
        self.calendar.channels.pop(channel_id, None)


@pytest.fixture
def fake_calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def client_factory(fake_calendar: FakeCalendar):
    """Client factory handing out fake clients over one shared calendar."""
    def _factory(connection: CalendarConnection) -> FakeCalendarClient:
        return FakeCalendarClient(fake_calendar)

    return _factory


@pytest.fixture
def calendars_by_account():
    """
    One FakeCalendar per connection account email.

    Returns:
        (calendars, client_factory) where calendars is keyed by email
    """
    calendars: defaultdict[str, FakeCalendar] = defaultdict(FakeCalendar)

    def _factory(connection: CalendarConnection) -> FakeCalendarClient:
        return FakeCalendarClient(calendars[connection.account_email])

    return calendars, _factory


@pytest.fixture
def token_manager() -> AsyncMock:
    manager = AsyncMock()
    manager.refresh.return_value = "refreshed-token"
    return manager


@pytest.fixture
def orchestrator(session_factory, settings, token_manager, client_factory) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory,
        settings=settings,
        token_manager=token_manager,
        client_factory=client_factory,
        sleep=no_sleep,
    )
