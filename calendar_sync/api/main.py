"""
FastAPI application for the calendar sync engine.

Thin HTTP surface over the engine:
- Push notification receiver for Google Calendar
- Manual sync trigger, last status and conflict resolution
- OAuth connect / disconnect
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from calendar_sync import __version__
from calendar_sync.api.auth_routes import router as auth_router
from calendar_sync.api.dependencies import init_services, reset_services
from calendar_sync.api.middleware import RequestLoggingMiddleware
from calendar_sync.api.sync_routes import router as sync_router
from calendar_sync.api.webhook_routes import router as webhook_router
from calendar_sync.config import get_settings
from calendar_sync.database import check_connection
from calendar_sync.logging_config import configure_logging

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str
    database_connected: bool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    settings = get_settings()
    if settings.is_production:
        settings.validate_production_config()

    logger.info("Starting calendar sync API")
    services = init_services()
    services.renewal_scheduler.start()

    yield

    logger.info("Shutting down calendar sync API")
    await services.renewal_scheduler.stop()
    reset_services()


app = FastAPI(
    title="Calendar Sync API",
    description="Bidirectional sync between the LMS, study planner and Google Calendar.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(webhook_router)
app.include_router(sync_router)
app.include_router(auth_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_type": "http_error",
            "message": exc.detail,
            "retryable": exc.status_code >= 500,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error_type": "internal_error",
            "message": "An unexpected error occurred",
            "retryable": True,
        },
    )


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check() -> HealthResponse:
    database_connected = await check_connection()
    return HealthResponse(
        status="healthy" if database_connected else "unhealthy",
        version=__version__,
        database_connected=database_connected,
    )
