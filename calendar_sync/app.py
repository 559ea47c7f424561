"""
ASGI entry point.

Re-exports the FastAPI app from calendar_sync/api/main.py.
"""

from calendar_sync.api.main import app

__all__ = ["app"]
