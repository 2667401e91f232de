import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from ..core.cache import CacheManager, cache
from ..core.exceptions import ERROR_MESSAGES, Unauthorized
from ..core.security import decode_access_token
from .exam_repository import ExamRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SocketUser:
    id: int
    type: str

    @property
    def is_candidate(self) -> bool:
        return self.type == "candidate"


class AuthService:
    def __init__(self, repository: ExamRepository, cache_manager: Optional[CacheManager] = None):
        self.repository = repository
        self.cache = cache_manager or cache

    async def authenticate(self, token: Optional[str]) -> SocketUser:
        if not token:
            raise Unauthorized(ERROR_MESSAGES["auth"]["unauthorized"])

        try:
            payload = decode_access_token(token)
            user_id = int(payload["sub"])
        except jwt.ExpiredSignatureError:
            raise Unauthorized(ERROR_MESSAGES["auth"]["token_expired"])
        except (jwt.InvalidTokenError, ValueError):
            raise Unauthorized(ERROR_MESSAGES["auth"]["token_invalid"])

        user = await self.get_socket_user(user_id)
        if user is None:
            raise Unauthorized(ERROR_MESSAGES["auth"]["user_not_found"])
        return user

    async def get_socket_user(self, user_id: int) -> Optional[SocketUser]:
        cache_key = f"socket_user:{user_id}"
        cached = await self.cache.aget(cache_key)
        if cached:
            return SocketUser(id=cached["id"], type=cached["type"])

        user = await self.repository.get_user(user_id)
        if user is None:
            return None

        socket_user = SocketUser(id=user.id, type=user.type)
        await self.cache.aset(cache_key, {"id": socket_user.id, "type": socket_user.type})
        return socket_user
