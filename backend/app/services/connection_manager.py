import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Maps connection handles to their live WebSocket and delivers events.

    Delivery is at-most-once: a send to a handle that is unknown, closed or
    failing is dropped and reported as ``False``.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry
        self.active_connections: Dict[str, WebSocket] = {}

    def connect(self, handle: str, websocket: WebSocket) -> None:
        self.active_connections[handle] = websocket

    def disconnect(self, handle: str) -> None:
        self.active_connections.pop(handle, None)

    def is_connected(self, handle: str) -> bool:
        websocket = self.active_connections.get(handle)
        return websocket is not None and websocket.client_state == WebSocketState.CONNECTED

    async def send(self, handle: str, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        websocket = self.active_connections.get(handle)
        if websocket is None or websocket.client_state != WebSocketState.CONNECTED:
            logger.debug(f"Dropping {event} for handle {handle}: not connected")
            return False

        try:
            await websocket.send_json({"event": event, "data": data if data is not None else {}})
            return True
        except Exception as e:
            logger.warning(f"Error sending {event} to handle {handle}: {e}")
            self.disconnect(handle)
            return False

    async def broadcast(self, exam_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Send to every handle in the exam session; returns the number delivered"""
        delivered = 0
        for handle in self.registry.handles(exam_id):
            if await self.send(handle, event, data):
                delivered += 1
        return delivered

    async def close_all(self) -> None:
        for handle, websocket in list(self.active_connections.items()):
            try:
                if websocket.client_state == WebSocketState.CONNECTED:
                    await websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing handle {handle}: {e}")
        self.active_connections.clear()
