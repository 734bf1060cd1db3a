"""API routers."""

from crmsync.routers.health import router as health_router
from crmsync.routers.sync import router as sync_router

__all__ = ["health_router", "sync_router"]
