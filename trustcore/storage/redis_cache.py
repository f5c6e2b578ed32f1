from __future__ import annotations

import hashlib
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding shared sliding-window rate-limit state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    KEY_PREFIX = "trustcore:rate:"

    # Atomic prune + count + conditional add over a sorted set of hit timestamps.
    # ARGV: now_ms, window_ms, limit, member, record(0/1)
    # Returns {allowed, count, oldest_ms}
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local record = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  allowed = 1
  if record == 1 then
    redis.call('ZADD', key, now, member)
    count = count + 1
  end
end

local oldest_ts = now
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  oldest_ts = tonumber(oldest[2])
end
if count > 0 then
  redis.call('PEXPIRE', key, window)
end
return {allowed, count, oldest_ts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @classmethod
    def _normalize_rate_key(cls, key: str) -> str:
        """Hash rate keys so client-supplied fragments cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{cls.KEY_PREFIX}{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def sliding_window_hit(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now_ms: int,
        *,
        record: bool = True,
    ) -> Tuple[bool, int, int]:
        allowed, count, oldest = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}:{uuid.uuid4().hex}", int(record)],
        )
        return bool(int(allowed)), int(count), int(oldest)

    async def reset_key(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def reset_all(self) -> int:
        removed = 0
        async for raw_key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*"):
            removed += await self.client.delete(raw_key)
        return removed

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest while exposing the same awaitable surface as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def sliding_window_hit(
        self,
        key: str,
        limit: int,
        window_ms: int,
        now_ms: int,
        *,
        record: bool = True,
    ) -> Tuple[bool, int, int]:
        allowed, count, oldest = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}:{uuid.uuid4().hex}", int(record)],
        )
        return bool(int(allowed)), int(count), int(oldest)

    async def reset_key(self, key: str) -> None:
        self._sync_client.delete(RedisCache._normalize_rate_key(key))

    async def reset_all(self) -> int:
        removed = 0
        for raw_key in self._sync_client.scan_iter(match=f"{RedisCache.KEY_PREFIX}*"):
            removed += self._sync_client.delete(raw_key)
        return removed

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
