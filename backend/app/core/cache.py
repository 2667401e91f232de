import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from app.core.config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Async redis cache; every failure is logged and reported as a miss"""

    def __init__(self, redis_url: Optional[str] = None, default_ttl: Optional[int] = None):
        self.redis_url = redis_url or settings.redis_url
        self.default_ttl = default_ttl or settings.cache_default_ttl
        self._async_client: Optional[aioredis.Redis] = None

    async def get_async_client(self) -> aioredis.Redis:
        if self._async_client is None:
            try:
                self._async_client = aioredis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
                await self._async_client.ping()
            except Exception as e:
                logger.warning(f"Failed to create async Redis client: {e}")
                self._async_client = None
                raise
        return self._async_client

    def _serialize_value(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize_value(self, value: Optional[str]) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Cache deserialization error: {e}")
            return None

    def _reset_on_connection_error(self, error: Exception) -> None:
        if "connection" in str(error).lower() or "timeout" in str(error).lower():
            self._async_client = None

    async def aget(self, key: str) -> Optional[Any]:
        try:
            client = await self.get_async_client()
            value = await client.get(key)
            return self._deserialize_value(value)
        except Exception as e:
            logger.warning(f"Async cache get error for key '{key}': {e}")
            self._reset_on_connection_error(e)
            return None

    async def aset(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            client = await self.get_async_client()
            result = await client.setex(key, ttl or self.default_ttl, self._serialize_value(value))
            return bool(result)
        except Exception as e:
            logger.warning(f"Async cache set error for key '{key}': {e}")
            self._reset_on_connection_error(e)
            return False

    async def adelete(self, key: str) -> bool:
        try:
            client = await self.get_async_client()
            return bool(await client.delete(key))
        except Exception as e:
            logger.warning(f"Async cache delete error for key '{key}': {e}")
            self._reset_on_connection_error(e)
            return False

    async def ahealth_check(self) -> bool:
        try:
            client = await self.get_async_client()
            return bool(await client.ping())
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self._async_client is not None:
            await self._async_client.close()
            self._async_client = None


cache = CacheManager()
