from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from nexushub.storage.redis_cache import refresh_key


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Only used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Entries expire
    lazily on access; all operations hold one lock so compare-and-delete is
    atomic within the process.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[refresh_key(user_id)] = (
                token,
                self._clock() + max(1, int(ttl_seconds)),
            )

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._get_live(refresh_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(refresh_key(user_id), None)

    async def consume_refresh_token(self, user_id: str, token: str) -> bool:
        key = refresh_key(user_id)
        with self._lock:
            if self._get_live(key) != token:
                return False
            self._entries.pop(key, None)
            return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
