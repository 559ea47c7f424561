"""
Sync orchestrator.

Drives full and incremental reconciliation between the LMS, the study
planner and each connected external calendar:

- Full runs walk LMS → external, study sessions → external, then
  external → internal for every active connection of a user.
- Incremental runs are triggered by push notifications and only pull
  external changes for one connection.

Every decision is made from the content hashes recorded on the event
mapping: a side "changed" when its current hash differs from the hash
stored at the last agreed sync. Writes to the provider never notify
attendees.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from calendar_sync.auth.token_manager import TokenManager
from calendar_sync.config import Settings, get_settings
from calendar_sync.exceptions import (
    AlreadyInProgressError,
    ReadOnlySourceError,
    SyncCancelledError,
    SyncError,
)
from calendar_sync.integrations.google_calendar.client import GoogleCalendarClient
from calendar_sync.integrations.google_calendar.exceptions import (
    AuthExpiredError,
    GoogleCalendarAuthError,
    GoogleCalendarConflictError,
    GoogleCalendarError,
    GoogleCalendarNotFoundError,
    format_error_for_user,
)
from calendar_sync.integrations.google_calendar.types import GoogleEvent, WebhookNotification
from calendar_sync.models.base import as_utc, utcnow
from calendar_sync.models.conflicts import SyncConflict
from calendar_sync.models.connections import CalendarConnection
from calendar_sync.models.mappings import EventMapping
from calendar_sync.services.connection_store import ConnectionStore
from calendar_sync.services.locks import KeyedLock
from calendar_sync.services.mapping_store import EventMappingStore
from calendar_sync.services.run_log import DetectedConflict, SyncConflictStore, SyncRunLogStore
from calendar_sync.services.source_events import SourceEventReader
from calendar_sync.sync.canonical import (
    COMPARED_FIELDS,
    CanonicalEvent,
    ConflictType,
    EventDiff,
    MappingStatus,
    ResolutionStatus,
    SourceSystem,
    classify_conflict,
    content_hash,
    diff,
    require_editable,
)
from calendar_sync.sync.reports import SyncPhase, SyncRunReport, SyncStats
from calendar_sync.sync.transformers import (
    canonical_to_external,
    external_event_to_canonical,
    is_engine_authored,
    lms_event_to_canonical,
    study_session_to_canonical,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[str, Optional[float]], Any]
ClientFactory = Callable[[CalendarConnection], GoogleCalendarClient]

ENGINE = "engine"
PARTIAL_CONNECTION_MESSAGE = "Some events could not be synced. We'll try again shortly."
CALENDAR_DELETED_MESSAGE = "Calendar deleted"
RESOLUTION_ACTIONS = ("keep_internal", "keep_external")

_ALL_CHANGED = EventDiff(changed=True, changed_fields=COMPARED_FIELDS)


@dataclass
class _RunContext:
    """Mutable bookkeeping for one run."""

    user_id: str
    run_id: uuid.UUID
    sync_type: str
    progress: Optional[ProgressCallback] = None
    phase: SyncPhase = SyncPhase.IDLE
    started: float = field(default_factory=time.monotonic)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    successes: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)
    conflicts: list[DetectedConflict] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def final_status(self) -> SyncPhase:
        if self.failed == 0 and not self.cancelled:
            return SyncPhase.COMPLETED
        if self.successes > 0:
            return SyncPhase.PARTIAL
        return SyncPhase.FAILED


@dataclass
class _ConnectionPass:
    """State shared by the directions of one connection within a run."""

    connection: CalendarConnection
    client: GoogleCalendarClient
    external_index: dict[str, GoogleEvent] = field(default_factory=dict)
    mappings: dict[tuple[str, str], EventMapping] = field(default_factory=dict)
    orphans: dict[tuple[str, str], GoogleEvent] = field(default_factory=dict)

    def remember(self, mapping: EventMapping) -> None:
        self.mappings[(mapping.source_system, mapping.source_id)] = mapping

    @property
    def calendar_id(self) -> str:
        return self.connection.calendar_id

    @property
    def time_zone(self) -> str:
        return self.connection.calendar_timezone or "UTC"


def _describe(error: Exception) -> str:
    if isinstance(error, GoogleCalendarError):
        return error.message
    return str(error) or error.__class__.__name__


class SyncOrchestrator:
    """
    Coordinates sync runs for all users of one process.

    Concurrency:
    - One full run per user at a time; overlapping requests fail fast.
    - One pass per connection at a time; a push notification arriving
      while the connection is busy is deferred and coalesced (at most
      one waiting pass per connection).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        token_manager: Optional[TokenManager] = None,
        client_factory: Optional[ClientFactory] = None,
        now: Callable[[], Any] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._settings = settings or get_settings()
        self._connections = ConnectionStore(session_factory)
        self._mappings = EventMappingStore(session_factory)
        self._runs = SyncRunLogStore(session_factory)
        self._conflicts = SyncConflictStore(session_factory)
        self._sources = SourceEventReader(session_factory)
        self._token_manager = token_manager or TokenManager(session_factory)
        self._client_factory = client_factory or self._default_client
        self._now = now
        self._sleep = sleep

        self._user_locks = KeyedLock()
        self._connection_locks = KeyedLock()
        self._cancelled: set[str] = set()
        self._cancelled_connections: set[uuid.UUID] = set()
        self._deferred: dict[uuid.UUID, WebhookNotification] = {}
        self._progress_tasks: set[asyncio.Task] = set()

        self._default_duration = timedelta(minutes=self._settings.default_event_duration_minutes)

    def _default_client(self, connection: CalendarConnection) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            self._token_manager.provider_for(connection.id),
            settings=self._settings,
        )

    # =========================================================================
    # Public entry points
    # =========================================================================

    def is_syncing(self, user_id: str) -> bool:
        return self._user_locks.locked(user_id)

    def cancel_sync(self, user_id: str) -> bool:
        """
        Ask a running full sync to stop before its next external write.

        Returns:
            True if a run was in progress
        """
        if not self.is_syncing(user_id):
            return False
        self._cancelled.add(user_id)
        logger.info(f"Cancellation requested for user {user_id}")
        return True

    def cancel_connection(self, connection_id: uuid.UUID) -> bool:
        """
        Stop the pass working on one connection before its next external
        write. Other connections in the same run carry on.

        Returns:
            True if a pass for the connection was in progress
        """
        if not self._connection_locks.locked(connection_id):
            return False
        self._cancelled_connections.add(connection_id)
        logger.info(f"Cancellation requested for connection {connection_id}")
        return True

    async def perform_full_sync(
        self,
        user_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncRunReport:
        """
        Reconcile every active connection of a user.

        Raises:
            AlreadyInProgressError: A full sync for this user is running
            SyncError: The run could not start (no connections, datastore down)
        """
        async with self._user_locks.hold_nowait(user_id) as acquired:
            if not acquired:
                raise AlreadyInProgressError(user_id)
            self._cancelled.discard(user_id)
            try:
                return await self._run_full_sync(user_id, on_progress)
            finally:
                self._cancelled.discard(user_id)

    async def get_last_sync_status(self, user_id: str) -> Optional[SyncRunReport]:
        """Report of the user's most recent finished run, if any."""
        run = await self._db(lambda: self._runs.latest_finalized(user_id))
        return SyncRunReport.from_run_log(run) if run else None

    async def list_conflicts(self, user_id: str) -> list[SyncConflict]:
        return await self._db(lambda: self._conflicts.list_pending(user_id))

    async def resolve_conflict(self, user_id: str, conflict_id: uuid.UUID, action: str) -> SyncConflict:
        """
        Close a pending conflict. The winning side is carried across on the
        user's next sync.

        Raises:
            ValueError: Unknown action, or the conflict is not the user's pending conflict
        """
        if action not in RESOLUTION_ACTIONS:
            raise ValueError(f"Invalid resolution action: {action}")
        pending = {c.id for c in await self.list_conflicts(user_id)}
        if conflict_id not in pending:
            raise ValueError(f"No pending conflict {conflict_id}")
        return await self._db(lambda: self._conflicts.resolve(conflict_id, action))

    async def handle_webhook(self, notification: WebhookNotification) -> Optional[SyncRunReport]:
        """
        React to a push notification from the provider.

        Returns:
            The incremental run report, or None when nothing ran (handshake,
            unknown channel, disabled calendar, or the pass was deferred)
        """
        state = notification.resource_state
        if state == "sync":
            logger.info(f"Webhook handshake for channel {notification.channel_id}")
            return None

        connection = await self._db(lambda: self._connections.get_by_channel_id(notification.channel_id))
        if connection is None:
            logger.warning(f"Webhook for unknown channel {notification.channel_id}; ignoring")
            return None

        expected_token = self._settings.webhook_token
        if expected_token and notification.token != expected_token:
            logger.warning(f"Webhook token mismatch on channel {notification.channel_id}; ignoring")
            return None

        if state == "not_exists":
            await self._db(lambda: self._connections.disable(connection.id, CALENDAR_DELETED_MESSAGE))
            return None

        if state != "exists":
            logger.warning(f"Unhandled webhook resource state '{state}'")
            return None

        if not connection.sync_enabled:
            logger.debug(f"Connection {connection.id} is disabled; ignoring webhook")
            return None

        async with self._connection_locks.hold_nowait(connection.id) as acquired:
            if not acquired:
                self._deferred[connection.id] = notification
                logger.info(f"Connection {connection.id} busy; deferred incremental sync")
                return None
            report = await self._run_incremental_sync(connection)

        await self._drain_deferred(connection.id)
        return report

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    async def _run_full_sync(self, user_id: str, on_progress: Optional[ProgressCallback]) -> SyncRunReport:
        try:
            run = await self._db(lambda: self._runs.start(user_id, "full"))
        except Exception as e:
            raise SyncError("Could not start sync run", sync_type="full", original_error=e) from e

        ctx = _RunContext(user_id=user_id, run_id=run.id, sync_type="full", progress=on_progress)
        self._enter(ctx, SyncPhase.STARTED)
        self._notify(ctx, "Starting calendar sync", 0.0)

        try:
            connections = await self._db(lambda: self._connections.list_active_for_user(user_id))
        except Exception as e:
            ctx.record_error(f"Could not load connections: {_describe(e)}")
            await self._finalize(ctx, SyncPhase.FAILED)
            raise SyncError("Could not load calendar connections", sync_type="full", original_error=e) from e

        if not connections:
            ctx.record_error("No active calendar connections")
            await self._finalize(ctx, SyncPhase.FAILED)
            raise SyncError("No active calendar connections", sync_type="full")

        for index, connection in enumerate(connections):
            if user_id in self._cancelled:
                ctx.cancelled = True
                ctx.errors.append("Sync cancelled")
                break
            self._notify(
                ctx,
                f"Syncing {connection.account_email}",
                round(100.0 * index / len(connections), 1),
            )
            await self._sync_connection(ctx, connection, self._full_pass)
            await self._drain_deferred(connection.id)

        await self._persist_conflicts(ctx)
        report = await self._finalize(ctx, ctx.final_status())
        self._notify(ctx, "Calendar sync finished", 100.0)
        return report

    async def _run_incremental_sync(self, connection: CalendarConnection) -> SyncRunReport:
        """Caller holds the connection lock."""
        try:
            run = await self._db(
                lambda: self._runs.start(connection.user_id, "incremental", connection.id)
            )
        except Exception as e:
            raise SyncError(
                "Could not start incremental sync",
                sync_type="incremental",
                connection_id=str(connection.id),
                original_error=e,
            ) from e

        ctx = _RunContext(user_id=connection.user_id, run_id=run.id, sync_type="incremental")
        self._enter(ctx, SyncPhase.STARTED)
        await self._sync_connection(ctx, connection, self._incremental_pass, lock=False)
        await self._persist_conflicts(ctx)
        return await self._finalize(ctx, ctx.final_status())

    async def _sync_connection(
        self,
        ctx: _RunContext,
        connection: CalendarConnection,
        work: Callable[[_RunContext, _ConnectionPass], Awaitable[None]],
        *,
        lock: bool = True,
    ) -> None:
        """Run one connection's pass, isolating its failure from other connections."""
        try:
            if lock:
                async with self._connection_locks.hold(connection.id):
                    await self._sync_connection_locked(ctx, connection, work)
            else:
                await self._sync_connection_locked(ctx, connection, work)
        finally:
            self._cancelled_connections.discard(connection.id)

    async def _sync_connection_locked(
        self,
        ctx: _RunContext,
        connection: CalendarConnection,
        work: Callable[[_RunContext, _ConnectionPass], Awaitable[None]],
    ) -> None:
        failures_before = ctx.failed
        try:
            await self._with_auth_retry(connection, lambda client: work(ctx, _ConnectionPass(connection, client)))
        except SyncCancelledError:
            if connection.id in self._cancelled_connections:
                logger.info(f"Pass for connection {connection.id} stopped; connection is going away")
                return
            ctx.cancelled = True
            ctx.errors.append("Sync cancelled")
            logger.info(f"Sync for connection {connection.id} cancelled")
            return
        except Exception as e:
            ctx.record_error(f"{connection.account_email}: {_describe(e)}")
            logger.error(
                f"Sync failed for connection {connection.id}: {e}",
                extra={"run_id": str(ctx.run_id), "connection_id": str(connection.id)},
                exc_info=not isinstance(e, GoogleCalendarError),
            )
            await self._record_connection_result(connection.id, "error", format_error_for_user(e))
            return

        ctx.successes += 1
        if ctx.failed == failures_before:
            await self._record_connection_result(connection.id, "success", None)
        else:
            await self._record_connection_result(connection.id, "partial", PARTIAL_CONNECTION_MESSAGE)

    async def _with_auth_retry(
        self,
        connection: CalendarConnection,
        work: Callable[[GoogleCalendarClient], Awaitable[None]],
    ) -> None:
        """
        Run `work` with a fresh client. An expired or rejected (401) access
        token is refreshed once centrally and the work retried.
        """
        for attempt in range(2):
            client = self._client_factory(connection)
            try:
                await work(client)
                return
            except GoogleCalendarAuthError as e:
                rejected = isinstance(e, AuthExpiredError) or e.status_code == 401
                if attempt == 1 or not rejected:
                    raise
                logger.info(f"Access token expired for connection {connection.id}; refreshing")
                await self._token_manager.refresh(connection.id)
            finally:
                await client.aclose()

    async def _finalize(self, ctx: _RunContext, status: SyncPhase) -> SyncRunReport:
        self._enter(ctx, SyncPhase.FINALIZING)
        error_summary = "; ".join(ctx.errors[:20]) or None
        duration_ms = int((time.monotonic() - ctx.started) * 1000)
        try:
            run = await self._db(
                lambda: self._runs.finalize(
                    ctx.run_id,
                    status.value,
                    created=ctx.created,
                    updated=ctx.updated,
                    deleted=ctx.deleted,
                    conflicts=len(ctx.conflicts),
                    failed=ctx.failed,
                    error_message=error_summary,
                )
            )
            synced_at = as_utc(run.completed_at)
        except Exception as e:
            logger.error(f"Could not finalize sync run {ctx.run_id}: {e}", exc_info=True)
            synced_at = utcnow()

        self._enter(ctx, status)
        logger.info(
            f"Sync run {ctx.run_id} {status.value}: {ctx.created} created, {ctx.updated} updated, "
            f"{ctx.deleted} deleted, {len(ctx.conflicts)} conflicts, {ctx.failed} errors",
            extra={"run_id": str(ctx.run_id), "user_id": ctx.user_id, "sync_type": ctx.sync_type},
        )
        return SyncRunReport(
            run_id=ctx.run_id,
            success=status == SyncPhase.COMPLETED,
            sync_type=ctx.sync_type,
            status=status.value,
            synced_at=synced_at,
            stats=SyncStats(
                events_created=ctx.created,
                events_updated=ctx.updated,
                events_deleted=ctx.deleted,
                conflicts_detected=len(ctx.conflicts),
                errors=ctx.failed,
            ),
            errors=list(ctx.errors),
            duration_ms=duration_ms,
        )

    async def _persist_conflicts(self, ctx: _RunContext) -> None:
        self._enter(ctx, SyncPhase.CONFLICT_DETECTION)
        for detected in ctx.conflicts:
            try:
                await self._db(lambda: self._conflicts.record(detected, ctx.run_id))
            except Exception as e:
                ctx.record_error(f"Could not record conflict for mapping {detected.mapping_id}: {_describe(e)}")
                logger.error(f"Failed to persist conflict: {e}", exc_info=True)

    async def _drain_deferred(self, connection_id: uuid.UUID) -> None:
        notification = self._deferred.pop(connection_id, None)
        if notification is None:
            return
        logger.info(f"Running deferred incremental sync for connection {connection_id}")
        try:
            await self.handle_webhook(notification)
        except Exception as e:
            logger.error(f"Deferred incremental sync failed for {connection_id}: {e}", exc_info=True)

    async def _record_connection_result(
        self,
        connection_id: uuid.UUID,
        status: str,
        message: Optional[str],
    ) -> None:
        try:
            await self._db(
                lambda: self._connections.record_sync_result(
                    connection_id, status, message, synced_at=self._now()
                )
            )
        except Exception as e:
            logger.error(f"Could not record sync result for {connection_id}: {e}", exc_info=True)

    # =========================================================================
    # Passes
    # =========================================================================

    async def _load_mappings(self, cp: _ConnectionPass) -> None:
        mappings = await self._db(lambda: self._mappings.list_for_connection(cp.connection.id))
        for mapping in mappings:
            cp.remember(mapping)

    def _index_window(self, cp: _ConnectionPass, items: list[GoogleEvent]) -> None:
        known_external_ids = {
            m.external_event_id for m in cp.mappings.values() if m.external_event_id
        }
        for event in items:
            if not event.id:
                continue
            cp.external_index[event.id] = event
            if is_engine_authored(event) and event.id not in known_external_ids:
                source = event.private_properties.get("source")
                source_id = event.private_properties.get("source_id")
                if source and source_id:
                    cp.orphans[(source, source_id)] = event

    async def _full_pass(self, ctx: _RunContext, cp: _ConnectionPass) -> None:
        connection = cp.connection
        now = self._now()
        window_end = now + timedelta(days=self._settings.external_window_days)

        page = await cp.client.get_events(cp.calendar_id, time_min=now, time_max=window_end)
        await self._load_mappings(cp)
        self._index_window(cp, page.items)

        if connection.sync_lms_events:
            self._enter(ctx, SyncPhase.LMS_TO_EXTERNAL)
            rows = await self._db(lambda: self._sources.upcoming_lms_events(ctx.user_id, now))
            events = [lms_event_to_canonical(row, self._default_duration) for row in rows]
            await self._push_outward(ctx, cp, SourceSystem.LMS, events)

        if connection.sync_study_sessions:
            self._enter(ctx, SyncPhase.INTERNAL_TO_EXTERNAL)
            rows = await self._db(lambda: self._sources.upcoming_study_sessions(ctx.user_id, now))
            events = [study_session_to_canonical(row, self._default_duration) for row in rows]
            await self._push_outward(ctx, cp, SourceSystem.INTERNAL, events)

        if connection.sync_external_events:
            self._enter(ctx, SyncPhase.EXTERNAL_TO_INTERNAL)
            await self._pull_external(ctx, cp, page.items)
            if not page.truncated:
                await self._reconcile_missing_external(ctx, cp, now, window_end)

    async def _incremental_pass(self, ctx: _RunContext, cp: _ConnectionPass) -> None:
        connection = cp.connection
        now = self._now()
        time_min = now - timedelta(hours=self._settings.incremental_lookback_hours)
        time_max = now + timedelta(days=self._settings.external_window_days)
        updated_min = as_utc(connection.last_sync_at)

        page = await cp.client.get_events(
            cp.calendar_id,
            time_min=time_min,
            time_max=time_max,
            updated_min=updated_min,
        )
        await self._load_mappings(cp)
        self._index_window(cp, page.items)

        self._enter(ctx, SyncPhase.EXTERNAL_TO_INTERNAL)
        await self._pull_external(ctx, cp, page.items)

    async def _isolated(self, ctx: _RunContext, label: str, operation: Callable[[], Awaitable[None]]) -> None:
        """Run one event's work; its failure is counted and does not stop the pass."""
        try:
            await operation()
        except (GoogleCalendarAuthError, SyncCancelledError):
            raise
        except Exception as e:
            ctx.record_error(f"{label}: {_describe(e)}")
            logger.error(
                f"Failed to sync {label}: {e}",
                extra={"run_id": str(ctx.run_id)},
                exc_info=not isinstance(e, GoogleCalendarError),
            )
        else:
            ctx.successes += 1

    # =========================================================================
    # Outward: LMS / study sessions → external
    # =========================================================================

    async def _push_outward(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        source: SourceSystem,
        events: list[CanonicalEvent],
    ) -> None:
        seen: set[str] = set()
        for event in events:
            seen.add(event.source_id)
            await self._isolated(
                ctx, f"{source.value}:{event.source_id}", lambda: self._push_event(ctx, cp, event)
            )

        candidates = [
            m for (system, source_id), m in list(cp.mappings.items())
            if system == source.value
            and source_id not in seen
            and not m.internal_deleted
            and not m.is_deleted
        ]
        if not candidates:
            return

        still_present = await self._db(
            lambda: self._sources.existing_ids(source, ctx.user_id, [m.source_id for m in candidates])
        )
        for mapping in candidates:
            if mapping.source_id in still_present:
                continue  # in the past, not deleted
            await self._isolated(
                ctx,
                f"{source.value}:{mapping.source_id}",
                lambda: self._handle_source_deleted(ctx, cp, mapping),
            )

    async def _push_event(self, ctx: _RunContext, cp: _ConnectionPass, event: CanonicalEvent) -> None:
        mapping = cp.mappings.get((event.source_system.value, event.source_id))
        source_hash = content_hash(event)

        if mapping is not None and mapping.sync_status == MappingStatus.CONFLICT.value:
            logger.debug(f"Skipping {event.source_id}: conflict pending")
            return

        if mapping is None or (mapping.external_event_id is None and not mapping.external_deleted):
            await self._create_external(ctx, cp, event, source_hash)
            return

        source_changed = source_hash != mapping.internal_version_hash

        if mapping.external_deleted:
            if source_changed:
                ctx.conflicts.append(
                    self._conflict(
                        ctx, cp, mapping,
                        ConflictType.DELETION_CONFLICT,
                        internal=event,
                        internal_diff=self._diff_from_snapshot(mapping, event),
                    )
                )
            return

        external = cp.external_index.get(mapping.external_event_id)
        external_canonical = (
            external_event_to_canonical(external, self._default_duration) if external else None
        )
        external_hash = content_hash(external_canonical) if external_canonical else None
        external_changed = external is not None and external_hash != mapping.external_version_hash

        if not source_changed and not external_changed:
            return

        if source_changed and external_changed:
            await self._resolve_or_block(
                ctx, cp, mapping,
                internal=event,
                external=external_canonical,
                keep_internal=lambda: self._patch_external(ctx, cp, mapping, event, source_hash),
                keep_external=lambda: self._accept_external_edit(
                    ctx, cp, mapping, event, source_hash, external_canonical, external_hash
                ),
            )
            return

        if source_changed:
            await self._patch_external(ctx, cp, mapping, event, source_hash)
        else:
            await self._accept_external_edit(
                ctx, cp, mapping, event, source_hash, external_canonical, external_hash
            )

    async def _create_external(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        event: CanonicalEvent,
        source_hash: str,
    ) -> None:
        payload = canonical_to_external(event, cp.time_zone)
        orphan = cp.orphans.pop((event.source_system.value, event.source_id), None)

        if orphan is not None:
            # Copy written by an earlier run that never recorded its mapping
            stored = orphan
            if content_hash(external_event_to_canonical(orphan, self._default_duration)) != source_hash:
                self._check_cancelled(ctx, cp)
                stored = await cp.client.patch_event(cp.calendar_id, orphan.id, payload, send_updates="none")
                ctx.updated += 1
            logger.info(f"Adopted existing external copy {orphan.id} for {event.source_id}")
        else:
            self._check_cancelled(ctx, cp)
            stored = await cp.client.create_event(cp.calendar_id, payload, send_updates="none")
            ctx.created += 1

        external_hash = content_hash(external_event_to_canonical(stored, self._default_duration))
        mapping = await self._db(
            lambda: self._mappings.upsert(
                ctx.user_id,
                cp.connection.id,
                event.source_system,
                event.source_id,
                external_event_id=stored.id,
                internal_version_hash=source_hash,
                external_version_hash=external_hash,
                snapshot=event.to_snapshot(),
                sync_status=MappingStatus.SYNCED.value,
                last_modified_by=ENGINE,
                last_synced_at=self._now(),
                internal_deleted=False,
                external_deleted=False,
                deleted_at=None,
            )
        )
        cp.remember(mapping)
        if stored.id:
            cp.external_index[stored.id] = stored

    async def _patch_external(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        event: CanonicalEvent,
        source_hash: str,
    ) -> bool:
        """
        Write the source version over the external copy.

        Returns:
            False when the provider kept rejecting the write and a conflict
            was recorded instead
        """
        self._check_cancelled(ctx, cp)
        payload = canonical_to_external(event, cp.time_zone)
        try:
            stored = await cp.client.patch_event(
                cp.calendar_id, mapping.external_event_id, payload, send_updates="none"
            )
        except GoogleCalendarConflictError as e:
            await self._record_write_conflict(ctx, cp, mapping, event, e)
            return False
        except GoogleCalendarNotFoundError:
            logger.info(f"External copy {mapping.external_event_id} is gone; marking deleted")
            updated = await self._db(
                lambda: self._mappings.update(
                    mapping.id,
                    external_deleted=True,
                    internal_version_hash=source_hash,
                    snapshot=event.to_snapshot(),
                    last_synced_at=self._now(),
                )
            )
            cp.remember(updated)
            ctx.deleted += 1
            return True

        external_hash = content_hash(external_event_to_canonical(stored, self._default_duration))
        updated = await self._db(
            lambda: self._mappings.update(
                mapping.id,
                internal_version_hash=source_hash,
                external_version_hash=external_hash,
                snapshot=event.to_snapshot(),
                sync_status=MappingStatus.SYNCED.value,
                last_modified_by=ENGINE,
                last_synced_at=self._now(),
            )
        )
        cp.remember(updated)
        if stored.id:
            cp.external_index[stored.id] = stored
        ctx.updated += 1
        return True

    async def _accept_external_edit(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        event: CanonicalEvent,
        source_hash: str,
        external: CanonicalEvent,
        external_hash: str,
    ) -> None:
        """
        Keep the edited external copy over the source version `event`.

        Editable sources take the new version into the mapping snapshot.
        Read-only sources keep their data; the edit is only acknowledged.
        Either way the current source version is acknowledged too.
        """
        source = event.source_system
        try:
            require_editable(source)
        except ReadOnlySourceError:
            logger.info(
                f"External edit to read-only {source.value} event {mapping.source_id} not propagated"
            )
            updated = await self._db(
                lambda: self._mappings.update(
                    mapping.id,
                    internal_version_hash=source_hash,
                    external_version_hash=external_hash,
                    sync_status=MappingStatus.SYNCED.value,
                    last_modified_by=SourceSystem.EXTERNAL.value,
                    last_synced_at=self._now(),
                )
            )
            cp.remember(updated)
            return

        updated = await self._db(
            lambda: self._mappings.update(
                mapping.id,
                snapshot=external.to_snapshot(),
                internal_version_hash=source_hash,
                external_version_hash=external_hash,
                sync_status=MappingStatus.SYNCED.value,
                last_modified_by=SourceSystem.EXTERNAL.value,
                last_synced_at=self._now(),
            )
        )
        cp.remember(updated)
        ctx.updated += 1

    async def _handle_source_deleted(self, ctx: _RunContext, cp: _ConnectionPass, mapping: EventMapping) -> None:
        """The source row is gone: remove the external copy unless it was edited since."""
        if mapping.external_deleted or not mapping.external_event_id:
            updated = await self._db(lambda: self._mappings.mark_deleted(mapping.id, side="internal"))
            cp.remember(updated)
            return

        external = cp.external_index.get(mapping.external_event_id)
        if external is not None:
            external_canonical = external_event_to_canonical(external, self._default_duration)
            if content_hash(external_canonical) != mapping.external_version_hash:
                ctx.conflicts.append(
                    self._conflict(
                        ctx, cp, mapping,
                        ConflictType.DELETION_CONFLICT,
                        external=external_canonical,
                        external_diff=self._diff_from_snapshot(mapping, external_canonical),
                    )
                )
                return

        self._check_cancelled(ctx, cp)
        await cp.client.delete_event(cp.calendar_id, mapping.external_event_id, send_updates="none")
        updated = await self._db(
            lambda: self._mappings.update(
                mapping.id,
                internal_deleted=True,
                external_deleted=True,
                deleted_at=self._now(),
                last_modified_by=ENGINE,
                last_synced_at=self._now(),
            )
        )
        cp.remember(updated)
        cp.external_index.pop(mapping.external_event_id, None)
        ctx.deleted += 1

    # =========================================================================
    # Inward: external → internal
    # =========================================================================

    async def _pull_external(self, ctx: _RunContext, cp: _ConnectionPass, items: list[GoogleEvent]) -> None:
        for event in items:
            if not event.id or is_engine_authored(event):
                continue
            await self._isolated(ctx, f"external:{event.id}", lambda: self._pull_event(ctx, cp, event))

    async def _pull_event(self, ctx: _RunContext, cp: _ConnectionPass, event: GoogleEvent) -> None:
        mapping = cp.mappings.get((SourceSystem.EXTERNAL.value, event.id))

        if event.is_cancelled:
            if mapping is not None and not mapping.is_deleted and not mapping.external_deleted:
                await self._handle_external_deleted(ctx, cp, mapping)
            return

        external = external_event_to_canonical(event, self._default_duration)
        external_hash = content_hash(external)

        if mapping is None:
            created = await self._db(
                lambda: self._mappings.upsert(
                    ctx.user_id,
                    cp.connection.id,
                    SourceSystem.EXTERNAL,
                    event.id,
                    external_event_id=event.id,
                    snapshot=external.to_snapshot(),
                    internal_version_hash=external_hash,
                    external_version_hash=external_hash,
                    sync_status=MappingStatus.SYNCED.value,
                    last_modified_by=SourceSystem.EXTERNAL.value,
                    last_synced_at=self._now(),
                )
            )
            cp.remember(created)
            ctx.created += 1
            return

        if (
            mapping.sync_status == MappingStatus.CONFLICT.value
            or mapping.is_deleted
            or mapping.internal_deleted
        ):
            return

        internal = CanonicalEvent.from_snapshot(mapping.snapshot) if mapping.snapshot else None
        internal_hash = content_hash(internal) if internal else mapping.internal_version_hash
        internal_changed = internal_hash != mapping.internal_version_hash
        external_changed = external_hash != mapping.external_version_hash

        if not internal_changed and not external_changed:
            return

        if internal_changed and external_changed:
            await self._resolve_or_block(
                ctx, cp, mapping,
                internal=internal,
                external=external,
                keep_internal=lambda: self._push_internal_copy(ctx, cp, mapping, internal, internal_hash),
                keep_external=lambda: self._import_external(ctx, cp, mapping, external, external_hash),
            )
            return

        if external_changed:
            await self._import_external(ctx, cp, mapping, external, external_hash)
        else:
            await self._push_internal_copy(ctx, cp, mapping, internal, internal_hash)

    async def _import_external(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        external: CanonicalEvent,
        external_hash: str,
    ) -> None:
        updated = await self._db(
            lambda: self._mappings.update(
                mapping.id,
                snapshot=external.to_snapshot(),
                internal_version_hash=external_hash,
                external_version_hash=external_hash,
                sync_status=MappingStatus.SYNCED.value,
                last_modified_by=SourceSystem.EXTERNAL.value,
                last_synced_at=self._now(),
            )
        )
        cp.remember(updated)
        ctx.updated += 1

    async def _push_internal_copy(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        internal: CanonicalEvent,
        internal_hash: str,
    ) -> bool:
        """Write an internally edited copy of an external-origin event back out."""
        self._check_cancelled(ctx, cp)
        payload = canonical_to_external(internal, cp.time_zone)
        try:
            stored = await cp.client.patch_event(
                cp.calendar_id, mapping.external_event_id, payload, send_updates="none"
            )
        except GoogleCalendarConflictError as e:
            await self._record_write_conflict(ctx, cp, mapping, internal, e)
            return False
        except GoogleCalendarNotFoundError:
            await self._handle_external_deleted(ctx, cp, mapping)
            return True

        external_hash = content_hash(external_event_to_canonical(stored, self._default_duration))
        updated = await self._db(
            lambda: self._mappings.update(
                mapping.id,
                internal_version_hash=internal_hash,
                external_version_hash=external_hash,
                sync_status=MappingStatus.SYNCED.value,
                last_modified_by=ENGINE,
                last_synced_at=self._now(),
            )
        )
        cp.remember(updated)
        ctx.updated += 1
        return True

    async def _handle_external_deleted(self, ctx: _RunContext, cp: _ConnectionPass, mapping: EventMapping) -> None:
        """An external-origin event was deleted: drop the internal copy unless it was edited."""
        internal = CanonicalEvent.from_snapshot(mapping.snapshot) if mapping.snapshot else None
        if internal is not None and content_hash(internal) != mapping.internal_version_hash:
            ctx.conflicts.append(
                self._conflict(
                    ctx, cp, mapping,
                    ConflictType.DELETION_CONFLICT,
                    internal=internal,
                    internal_diff=self._diff_from_snapshot(mapping, internal),
                )
            )
            return

        updated = await self._db(
            lambda: self._mappings.update(
                mapping.id,
                internal_deleted=True,
                external_deleted=True,
                deleted_at=self._now(),
                last_modified_by=SourceSystem.EXTERNAL.value,
                last_synced_at=self._now(),
            )
        )
        cp.remember(updated)
        ctx.deleted += 1

    async def _reconcile_missing_external(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        window_start,
        window_end,
    ) -> None:
        """
        Imported events expected inside the window but absent from it were
        deleted or moved; ask the provider which.
        """
        for (system, source_id), mapping in list(cp.mappings.items()):
            if system != SourceSystem.EXTERNAL.value or mapping.is_tombstoned or mapping.is_deleted:
                continue
            if mapping.external_event_id in cp.external_index or not mapping.snapshot:
                continue
            snapshot = CanonicalEvent.from_snapshot(mapping.snapshot)
            if snapshot.all_day or not (window_start <= snapshot.start < window_end):
                continue
            await self._isolated(
                ctx, f"external:{source_id}", lambda: self._verify_external_exists(ctx, cp, mapping)
            )

    async def _verify_external_exists(self, ctx: _RunContext, cp: _ConnectionPass, mapping: EventMapping) -> None:
        try:
            event = await cp.client.get_event(cp.calendar_id, mapping.external_event_id)
        except GoogleCalendarNotFoundError:
            event = None
        if event is None or event.is_cancelled:
            await self._handle_external_deleted(ctx, cp, mapping)

    # =========================================================================
    # Conflicts
    # =========================================================================

    def _priority_winner(self, source: SourceSystem) -> Optional[str]:
        """'internal' or 'external' per the configured priority, None to block."""
        priority = list(self._settings.conflict_priority)
        external = SourceSystem.EXTERNAL.value
        if source.value not in priority or external not in priority or source.value == external:
            return None
        return "internal" if priority.index(source.value) < priority.index(external) else "external"

    def _diff_from_snapshot(self, mapping: EventMapping, current: CanonicalEvent) -> EventDiff:
        if not mapping.snapshot:
            return _ALL_CHANGED
        return diff(CanonicalEvent.from_snapshot(mapping.snapshot), current)

    def _conflict(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        conflict_type: ConflictType,
        *,
        internal: Optional[CanonicalEvent] = None,
        external: Optional[CanonicalEvent] = None,
        internal_diff: Optional[EventDiff] = None,
        external_diff: Optional[EventDiff] = None,
    ) -> DetectedConflict:
        return DetectedConflict(
            mapping_id=mapping.id,
            user_id=ctx.user_id,
            connection_id=cp.connection.id,
            conflict_type=conflict_type,
            internal_snapshot=internal.to_snapshot() if internal else None,
            external_snapshot=external.to_snapshot() if external else None,
            internal_changes=list(internal_diff.changed_fields) if internal_diff else [],
            external_changes=list(external_diff.changed_fields) if external_diff else [],
        )

    async def _resolve_or_block(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        *,
        internal: CanonicalEvent,
        external: CanonicalEvent,
        keep_internal: Callable[[], Awaitable[Optional[bool]]],
        keep_external: Callable[[], Awaitable[None]],
    ) -> None:
        """
        Both sides changed. Without a configured priority the write is
        blocked and a pending conflict recorded; with one, the winning side
        is written and the conflict recorded as auto-resolved.
        """
        internal_diff = self._diff_from_snapshot(mapping, internal)
        external_diff = self._diff_from_snapshot(mapping, external)
        detected = self._conflict(
            ctx, cp, mapping,
            classify_conflict(internal_diff, external_diff),
            internal=internal,
            external=external,
            internal_diff=internal_diff,
            external_diff=external_diff,
        )

        source = SourceSystem(mapping.source_system)
        winner = self._priority_winner(source if source != SourceSystem.EXTERNAL else SourceSystem.INTERNAL)
        if winner is None:
            logger.info(
                f"Conflict ({detected.conflict_type.value}) on {mapping.source_system}:{mapping.source_id}; "
                "waiting for resolution"
            )
            ctx.conflicts.append(detected)
            return

        if winner == "internal":
            if await keep_internal() is False:
                return
            detected.resolution_status = ResolutionStatus.AUTO_RESOLVED
            detected.resolution_action = "keep_internal"
        else:
            await keep_external()
            detected.resolution_status = ResolutionStatus.AUTO_RESOLVED
            detected.resolution_action = "keep_external"
        ctx.conflicts.append(detected)

    async def _record_write_conflict(
        self,
        ctx: _RunContext,
        cp: _ConnectionPass,
        mapping: EventMapping,
        internal: CanonicalEvent,
        error: GoogleCalendarConflictError,
    ) -> None:
        """
        The provider kept answering 409/412 to a write. Re-read the external
        copy and leave the divergence as a pending conflict.
        """
        try:
            current = await cp.client.get_event(cp.calendar_id, mapping.external_event_id)
        except GoogleCalendarNotFoundError:
            current = None
        external = (
            external_event_to_canonical(current, self._default_duration)
            if current is not None and not current.is_cancelled
            else None
        )

        internal_diff = self._diff_from_snapshot(mapping, internal)
        external_diff = self._diff_from_snapshot(mapping, external) if external else None
        if external is None:
            conflict_type = ConflictType.DELETION_CONFLICT
        elif internal_diff.changed and external_diff.changed:
            conflict_type = classify_conflict(internal_diff, external_diff)
        else:
            conflict_type = ConflictType.CONTENT_CHANGE

        logger.warning(
            f"Write to {mapping.external_event_id} for {mapping.source_system}:{mapping.source_id} "
            f"kept conflicting ({error.status_code}); recording {conflict_type.value} conflict"
        )
        ctx.conflicts.append(
            self._conflict(
                ctx, cp, mapping,
                conflict_type,
                internal=internal,
                external=external,
                internal_diff=internal_diff,
                external_diff=external_diff,
            )
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_cancelled(self, ctx: _RunContext, cp: _ConnectionPass) -> None:
        if ctx.user_id in self._cancelled:
            raise SyncCancelledError(f"Sync for user {ctx.user_id} cancelled")
        if cp.connection.id in self._cancelled_connections:
            raise SyncCancelledError(f"Sync for connection {cp.connection.id} cancelled")

    def _enter(self, ctx: _RunContext, phase: SyncPhase) -> None:
        logger.debug(
            f"Sync run {ctx.run_id}: {ctx.phase.value} -> {phase.value}",
            extra={"run_id": str(ctx.run_id), "phase": phase.value},
        )
        ctx.phase = phase

    def _notify(self, ctx: _RunContext, message: str, percent: Optional[float]) -> None:
        """Invoke the progress callback without letting it affect the run."""
        if ctx.progress is None:
            return
        try:
            result = ctx.progress(message, percent)
        except Exception:
            logger.warning("Progress callback raised; ignoring", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._progress_tasks.add(task)
            task.add_done_callback(self._progress_done)

    def _progress_done(self, task: asyncio.Task) -> None:
        self._progress_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Progress callback failed: {task.exception()}")

    async def _db(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a datastore call under the configured timeout, retrying transient failures."""
        settings = self._settings
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.retry_max_attempts),
            wait=wait_exponential(
                multiplier=settings.retry_initial_delay_seconds,
                max=settings.retry_max_delay_seconds,
            ),
            retry=retry_if_exception_type((asyncio.TimeoutError, OperationalError)),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                return await asyncio.wait_for(operation(), timeout=settings.datastore_timeout_seconds)
        raise AssertionError("unreachable")
