from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


def refresh_key(user_id: str) -> str:
    return f"auth:refresh:{user_id}"


class RedisCache:
    """Thin Redis wrapper holding the single live refresh token per user."""

    # Delete the pointer only if it still holds the presented token, so two
    # concurrent refreshes with the same token cannot both succeed.
    _COMPARE_AND_DELETE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        await self.client.set(refresh_key(user_id), token, ex=max(1, int(ttl_seconds)))

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return await self.client.get(refresh_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> None:
        await self.client.delete(refresh_key(user_id))

    async def consume_refresh_token(self, user_id: str, token: str) -> bool:
        """Atomically delete the stored refresh token if it equals ``token``."""
        result = await self.client.eval(
            self._COMPARE_AND_DELETE_SCRIPT, 1, refresh_key(user_id), token
        )
        return bool(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        self._sync_client.set(refresh_key(user_id), token, ex=max(1, int(ttl_seconds)))

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return self._sync_client.get(refresh_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> None:
        self._sync_client.delete(refresh_key(user_id))

    async def consume_refresh_token(self, user_id: str, token: str) -> bool:
        result = self._sync_client.eval(
            RedisCache._COMPARE_AND_DELETE_SCRIPT, 1, refresh_key(user_id), token
        )
        return bool(result)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
