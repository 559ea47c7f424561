"""
Run phases and the report returned from sync entry points.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from calendar_sync.models.sync_log import SyncRunLog


class SyncPhase(str, Enum):
    """States a sync run moves through, in order."""

    IDLE = "idle"
    STARTED = "started"
    LMS_TO_EXTERNAL = "lms_to_external"
    INTERNAL_TO_EXTERNAL = "internal_to_external"
    EXTERNAL_TO_INTERNAL = "external_to_internal"
    CONFLICT_DETECTION = "conflict_detection"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncStats(BaseModel):
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    errors: int = 0


class SyncRunReport(BaseModel):
    """Outcome of a full or incremental sync run."""

    run_id: Optional[uuid.UUID] = None
    success: bool = Field(..., description="True when the run finished without errors")
    sync_type: str = Field(..., description="'full' or 'incremental'")
    status: str = Field(..., description="'completed', 'partial' or 'failed'")
    synced_at: datetime
    stats: SyncStats = Field(default_factory=SyncStats)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    @classmethod
    def from_run_log(cls, run: SyncRunLog) -> "SyncRunReport":
        return cls(
            run_id=run.id,
            success=run.status == "completed",
            sync_type=run.sync_type,
            status=run.status,
            synced_at=run.completed_at or run.started_at,
            stats=SyncStats(
                events_created=run.events_created,
                events_updated=run.events_updated,
                events_deleted=run.events_deleted,
                conflicts_detected=run.conflicts_detected,
                errors=run.events_failed,
            ),
            errors=[run.error_message] if run.error_message else [],
            duration_ms=run.duration_ms or 0,
        )
