from __future__ import annotations

from typing import Iterable, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed ``Cache`` for verification codes, QR sessions and counters."""

    # Swap the value only while the key holds one of the expected values.
    # Replies {1, previous} on success and {0, current} otherwise; a missing
    # key comes back as nil.
    _COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
  for i = 3, #ARGV do
    if current == ARGV[i] then
      redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
      return {1, current}
    end
  end
end
return {0, current}
"""

    # Fixed-window counter: the expiry is set by the first hit only
    _INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._compare_and_set = self.client.register_script(self._COMPARE_AND_SET_SCRIPT)
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def get_delete(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def incr_window(self, key: str, window_seconds: int) -> int:
        return int(await self._incr_window(keys=[key], args=[window_seconds]))

    async def compare_and_set(
        self, key: str, expected: Iterable[str], value: str, ttl_seconds: int
    ) -> Tuple[bool, Optional[str]]:
        reply = await self._compare_and_set(
            keys=[key], args=[value, ttl_seconds, *expected]
        )
        swapped = bool(reply and int(reply[0]) == 1)
        current = reply[1] if reply and len(reply) > 1 else None
        return swapped, current

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
