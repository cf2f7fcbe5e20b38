"""
Live Channel API

WebSocket endpoint streaming analysis progress and alerts to dashboards.
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws/monitor")
async def monitor_websocket(websocket: WebSocket):
    """
    Subscribe to live events.

    The server only pushes; anything the client sends is ignored. Closing the
    socket does not cancel analyses already running.
    """
    hub = websocket.app.state.live_hub
    await websocket.accept()
    subscriber = hub.register(websocket)

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(subscriber.id)
