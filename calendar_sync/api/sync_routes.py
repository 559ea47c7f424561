"""
Sync API routes.

1. POST /sync - Run a full sync for the calling user
2. GET /sync/status - Report of the user's last finished run
3. GET /sync/conflicts - Pending conflicts
4. POST /sync/conflicts/{conflict_id}/resolve - Pick the winning side
"""

import logging
import uuid
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from calendar_sync.api.dependencies import get_orchestrator, resolve_user_id
from calendar_sync.exceptions import AlreadyInProgressError, SyncError
from calendar_sync.models.conflicts import SyncConflict
from calendar_sync.services.sync_orchestrator import SyncOrchestrator
from calendar_sync.sync.reports import SyncRunReport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class ConflictResponse(BaseModel):
    id: uuid.UUID
    connection_id: uuid.UUID
    mapping_id: uuid.UUID
    conflict_type: str
    internal_snapshot: Optional[dict] = None
    external_snapshot: Optional[dict] = None
    internal_changes: list[str] = Field(default_factory=list)
    external_changes: list[str] = Field(default_factory=list)
    detected_at: datetime

    @classmethod
    def from_model(cls, conflict: SyncConflict) -> "ConflictResponse":
        return cls(
            id=conflict.id,
            connection_id=conflict.connection_id,
            mapping_id=conflict.mapping_id,
            conflict_type=conflict.conflict_type,
            internal_snapshot=conflict.internal_snapshot,
            external_snapshot=conflict.external_snapshot,
            internal_changes=conflict.internal_changes or [],
            external_changes=conflict.external_changes or [],
            detected_at=conflict.detected_at,
        )


class ResolveConflictRequest(BaseModel):
    action: Literal["keep_internal", "keep_external"] = Field(
        ...,
        description="Which side's version wins",
    )


@router.post("", response_model=SyncRunReport)
async def trigger_sync(
    user_id: str = Depends(resolve_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncRunReport:
    """
    Run a full sync for the user and return its report.

    A run that finished with some failed events still returns 200 with
    status 'partial'.
    """
    try:
        return await orchestrator.perform_full_sync(user_id)
    except AlreadyInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except SyncError as e:
        logger.warning(f"Sync for user {user_id} could not run: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)


@router.get("/status", response_model=SyncRunReport)
async def sync_status(
    user_id: str = Depends(resolve_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncRunReport:
    report = await orchestrator.get_last_sync_status(user_id)
    if report is None:
        raise HTTPException(status_code=404, detail="No sync has completed yet")
    return report


@router.get("/conflicts", response_model=list[ConflictResponse])
async def list_conflicts(
    user_id: str = Depends(resolve_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> list[ConflictResponse]:
    conflicts = await orchestrator.list_conflicts(user_id)
    return [ConflictResponse.from_model(c) for c in conflicts]


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: uuid.UUID,
    request: ResolveConflictRequest,
    user_id: str = Depends(resolve_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ConflictResponse:
    try:
        conflict = await orchestrator.resolve_conflict(user_id, conflict_id, request.action)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"User {user_id} resolved conflict {conflict_id} with {request.action}")
    return ConflictResponse.from_model(conflict)
