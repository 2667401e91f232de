import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ....core.exceptions import Unauthorized
from ....services.session_coordinator import SessionCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()

# close codes a browser sends when the user leaves on purpose
CLEAN_CLOSE_CODES = (1000, 1001)


def disconnect_reason(code: Optional[int]) -> str:
    if code in CLEAN_CLOSE_CODES:
        return "client disconnect"
    return "transport close"


def _token_from_headers(websocket: WebSocket) -> Optional[str]:
    authorization = websocket.headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


@router.websocket("/ws")
async def exam_session_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    coordinator: SessionCoordinator = websocket.app.state.coordinator

    try:
        user = await coordinator.authenticate(token or _token_from_headers(websocket))
    except Unauthorized as e:
        logger.info(f"Rejected exam session socket: {e.message}")
        await websocket.close(code=1008, reason=e.message)
        return

    await websocket.accept()
    conn = coordinator.connect(websocket, user)
    reason = "transport close"

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await coordinator.connections.send(conn.handle, "error", {"message": "Invalid message"})
                continue
            await coordinator.handle_frame(conn, frame)
    except WebSocketDisconnect as e:
        reason = disconnect_reason(e.code)
    except Exception as e:
        logger.error(f"Exam session socket error for user {user.id}: {e}", exc_info=True)
        reason = "transport error"
    finally:
        await coordinator.disconnect(conn, reason)
