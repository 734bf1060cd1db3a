"""WebSocket connection manager for broadcasting sync progress."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


@dataclass
class ClientConnection:
    websocket: WebSocket
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ConnectionManager:
    """
    Manages WebSocket connections and broadcasts sync progress.

    Every connected client receives every progress message. Designed for
    single-instance deployment.
    """

    def __init__(self):
        self._connections: dict[WebSocket, ClientConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        """Number of active connections."""
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._connections[websocket] = ClientConnection(websocket=websocket)
        logger.info(f"WebSocket connected. Total connections: {self.connection_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a disconnected WebSocket."""
        async with self._lock:
            self._connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected. Total connections: {self.connection_count}")

    async def broadcast(self, message: BaseModel) -> None:
        """Send a progress message to all connected clients."""
        async with self._lock:
            if not self._connections:
                return
            payload = message.model_dump(mode="json")
            tasks = [self._send_safe(websocket, payload) for websocket in list(self._connections)]

        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"Broadcast {payload.get('type')} to {len(tasks)} subscribers")

    async def _send_safe(self, websocket: WebSocket, payload: dict) -> None:
        """Send message to websocket, handling errors gracefully."""
        try:
            await websocket.send_json(payload)
        except Exception as e:
            logger.warning(f"Failed to send to websocket: {e}")
            await self.disconnect(websocket)


# Global singleton instance
manager = ConnectionManager()
