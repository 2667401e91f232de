import logging
from typing import Any, Dict

from .connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Stateless WebRTC signaling pass-through between two connection handles"""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def relay_offer(self, to_handle: str, from_handle: str, signal: Dict[str, Any]) -> bool:
        delivered = await self.connections.send(to_handle, "receiveSignal", {
            "signal": signal,
            "from": from_handle,
        })
        if not delivered:
            logger.debug(f"Offer from {from_handle} to {to_handle} dropped")
        return delivered

    async def relay_answer(self, to_handle: str, from_handle: str, signal: Dict[str, Any]) -> bool:
        delivered = await self.connections.send(to_handle, "receivingReturnedSignal", {
            "signal": signal,
            "from": from_handle,
        })
        if not delivered:
            logger.debug(f"Answer from {from_handle} to {to_handle} dropped")
        return delivered
