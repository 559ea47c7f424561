"""
Authentication API routes for Google OAuth.

Handles the OAuth 2.0 authorization code flow and connection removal:
1. /auth/google/login - Start OAuth flow (returns the Google URL)
2. /auth/google/callback - Exchange the code and create the connection
3. DELETE /connections/{connection_id} - Disconnect a calendar
"""

import logging
import secrets
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from calendar_sync.api.dependencies import get_connection_service
from calendar_sync.integrations.google_calendar.exceptions import (
    GoogleCalendarAuthError,
    GoogleCalendarError,
    format_error_for_user,
)
from calendar_sync.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["authentication"])


class AuthLoginResponse(BaseModel):
    authorization_url: str
    state: str


class AuthCallbackResponse(BaseModel):
    success: bool
    connection_id: uuid.UUID
    email: str
    message: str


class DisconnectResponse(BaseModel):
    success: bool
    message: str


# In-memory state storage; single-process deployments only
_oauth_states: dict[str, str] = {}


def _generate_state(user_id: str) -> str:
    state = secrets.token_urlsafe(32)
    _oauth_states[state] = user_id
    return state


def _validate_state(state: str) -> Optional[str]:
    return _oauth_states.pop(state, None)


@router.get("/auth/google/login", response_model=AuthLoginResponse)
async def google_login(
    user_id: str = Query(..., description="User ID to associate with the connection"),
    service: ConnectionService = Depends(get_connection_service),
) -> AuthLoginResponse:
    """
    Start the Google OAuth flow.

    The state token ties the callback back to the user and guards
    against CSRF.
    """
    state = _generate_state(user_id)
    logger.info(f"Generated OAuth URL for user {user_id}")
    return AuthLoginResponse(authorization_url=service.authorization_url(state), state=state)


@router.get("/auth/google/callback", response_model=AuthCallbackResponse)
async def google_callback(
    state: str = Query(..., description="State token for CSRF protection"),
    code: Optional[str] = Query(None, description="Authorization code from Google"),
    error: Optional[str] = Query(None, description="Error from Google OAuth"),
    service: ConnectionService = Depends(get_connection_service),
) -> AuthCallbackResponse:
    if error:
        logger.warning(f"OAuth error: {error}")
        raise HTTPException(status_code=400, detail=f"OAuth authorization failed: {error}")

    user_id = _validate_state(state)
    if not user_id:
        logger.warning("Invalid OAuth state token")
        raise HTTPException(
            status_code=400,
            detail="Invalid or expired state token. Please restart the OAuth flow.",
        )
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    try:
        connection = await service.connect(user_id, code)
    except GoogleCalendarAuthError as e:
        logger.warning(f"OAuth code exchange rejected for user {user_id}: {e}")
        raise HTTPException(status_code=400, detail=format_error_for_user(e))
    except GoogleCalendarError as e:
        logger.error(f"OAuth callback failed for user {user_id}: {e}")
        raise HTTPException(status_code=502, detail=format_error_for_user(e))

    return AuthCallbackResponse(
        success=True,
        connection_id=connection.id,
        email=connection.account_email,
        message="Successfully connected Google Calendar",
    )


@router.delete("/connections/{connection_id}", response_model=DisconnectResponse)
async def disconnect(
    connection_id: uuid.UUID,
    service: ConnectionService = Depends(get_connection_service),
) -> DisconnectResponse:
    """
    Disconnect a calendar.

    Stops its push channel, cancels any running sync and removes the
    stored credentials. Mapping history is kept.
    """
    if not await service.disconnect(connection_id):
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
    return DisconnectResponse(success=True, message="Successfully disconnected Google Calendar")
