"""
FastAPI dependency injection providers.

Services are built once at application startup and shared by every
request; the orchestrator's in-process locks only work if there is a
single instance.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_sync.auth.encryption import get_token_cipher
from calendar_sync.auth.google_oauth import get_oauth_flow
from calendar_sync.auth.token_manager import TokenManager
from calendar_sync.config import get_settings
from calendar_sync.database import AsyncSessionLocal
from calendar_sync.services.channel_renewal import ChannelRenewalScheduler
from calendar_sync.services.connection_service import ConnectionService
from calendar_sync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    orchestrator: SyncOrchestrator
    connection_service: ConnectionService
    renewal_scheduler: ChannelRenewalScheduler


_services: Optional[Services] = None


def init_services(session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> Services:
    """Build the shared services. Called from the app lifespan."""
    global _services
    session_factory = session_factory or AsyncSessionLocal
    settings = get_settings()
    cipher = get_token_cipher()
    oauth_flow = get_oauth_flow()

    token_manager = TokenManager(session_factory, cipher=cipher, oauth_flow=oauth_flow)
    orchestrator = SyncOrchestrator(session_factory, settings=settings, token_manager=token_manager)
    connection_service = ConnectionService(
        session_factory,
        settings=settings,
        oauth_flow=oauth_flow,
        cipher=cipher,
        token_manager=token_manager,
        orchestrator=orchestrator,
    )
    scheduler = ChannelRenewalScheduler(
        session_factory, connection_service=connection_service, settings=settings
    )

    _services = Services(orchestrator, connection_service, scheduler)
    logger.info("Sync services initialized")
    return _services


def reset_services() -> None:
    global _services
    _services = None


def _require_services() -> Services:
    if _services is None:
        logger.error("Services not initialized")
        raise HTTPException(
            status_code=503,
            detail="Service temporarily unavailable - sync services not initialized",
        )
    return _services


def get_orchestrator() -> SyncOrchestrator:
    return _require_services().orchestrator


def get_connection_service() -> ConnectionService:
    return _require_services().connection_service


def resolve_user_id(x_user_id: Optional[str] = Header(None, description="User ID")) -> str:
    """User ID from the X-User-ID header set by the frontend's auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    return x_user_id
