"""WebSocket router for live sync progress."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from crmsync.websocket.manager import manager
from crmsync.websocket.schemas import ErrorMessage, PongMessage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/sync")
async def websocket_sync(websocket: WebSocket):
    """
    WebSocket endpoint for live sync progress.

    Protocol:
    - Client connects and receives every progress message
    - Server sends pong in response to ping for keep-alive

    Message formats:
    Client -> Server:
        {"type": "ping"}

    Server -> Client:
        {"type": "sync_start", "sync_type": "vtiger_contacts", "total": 24000, "timestamp": "..."}
        {"type": "sync_batch", "sync_type": "...", "batch_size": 15, "total_processed": 300, "total": 24000, "timestamp": "..."}
        {"type": "sync_complete", "sync_type": "...", "timestamp": "..."}
        {"type": "sync_error", "sync_type": "...", "message": "...", "timestamp": "..."}
        {"type": "pong"}
        {"type": "error", "message": "..."}
    """
    await manager.connect(websocket)

    try:
        while True:
            raw_message = await websocket.receive_text()

            try:
                data = json.loads(raw_message)
                msg_type = data.get("type") if isinstance(data, dict) else None

                if msg_type == "ping":
                    await websocket.send_json(PongMessage().model_dump())
                else:
                    error = ErrorMessage(message=f"Unknown message type: {msg_type}")
                    await websocket.send_json(error.model_dump())

            except json.JSONDecodeError:
                error = ErrorMessage(message="Invalid JSON")
                await websocket.send_json(error.model_dump())

    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        await manager.disconnect(websocket)
