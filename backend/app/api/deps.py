from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..core.exceptions import Unauthorized
from ..services.auth_service import SocketUser
from ..services.session_coordinator import SessionCoordinator

bearer_scheme = HTTPBearer(auto_error=False)


def get_coordinator(request: Request) -> SessionCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session coordinator is not running",
        )
    return coordinator


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> SocketUser:
    token = credentials.credentials if credentials else None
    try:
        return await coordinator.authenticate(token)
    except Unauthorized as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_candidate(
    current_user: SocketUser = Depends(get_current_user),
) -> SocketUser:
    if not current_user.is_candidate:
        raise HTTPException(status_code=403, detail="Only candidates can report proctoring events")
    return current_user
