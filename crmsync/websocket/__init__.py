"""WebSocket module for live sync progress."""

from crmsync.websocket.manager import ConnectionManager
from crmsync.websocket.router import router as websocket_router

__all__ = ["ConnectionManager", "websocket_router"]
