from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from trustcore.logging import get_logger
from trustcore.service.errors import RateLimitedError
from trustcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    limit: int
    remaining: int
    reset_at: int  # epoch ms when the oldest counted hit leaves the window
    retry_after_seconds: int

    @property
    def allowed(self) -> bool:
        return not self.limited


@dataclass(frozen=True)
class RateLimitRule:
    """Named throttle applied per client address."""

    prefix: str
    limit: int
    window_seconds: int

    def key(self, subject: str) -> str:
        return f"{self.prefix}:{subject or 'unknown'}"


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Sliding-window log limiter.

    Counts hits inside the trailing window per key. State is process-local
    unless a Redis cache is supplied, in which case every instance sharing
    that Redis sees the same windows.
    """

    def __init__(
        self,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock or _wall_clock_ms
        self._hits: Dict[str, Deque[int]] = {}
        self._lock = threading.Lock()

    def _local_hit(
        self, key: str, limit: int, window_ms: int, now: int, record: bool
    ) -> tuple[bool, int, int]:
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
            cutoff = now - window_ms
            while hits and hits[0] <= cutoff:
                hits.popleft()
            allowed = len(hits) < limit
            if allowed and record:
                hits.append(now)
            oldest = hits[0] if hits else now
            count = len(hits)
            if not hits:
                self._hits.pop(key, None)
            return allowed, count, oldest

    async def _hit(
        self, key: str, limit: int, window_seconds: int, *, record: bool
    ) -> RateLimitResult:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        if limit <= 0:
            return RateLimitResult(False, limit, 0, 0, 0)
        now = self._clock()
        window_ms = window_seconds * 1000
        if self.cache is not None:
            allowed, count, oldest = await self.cache.sliding_window_hit(
                key, limit, window_ms, now, record=record
            )
        else:
            allowed, count, oldest = self._local_hit(key, limit, window_ms, now, record)
        reset_at = oldest + window_ms
        retry_after = 0 if allowed else max(1, math.ceil((reset_at - now) / 1000))
        return RateLimitResult(
            limited=not allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one attempt against ``key`` unless it is already over the limit."""
        return await self._hit(key, limit, window_seconds, record=True)

    async def peek(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Report the window for ``key`` without counting an attempt."""
        return await self._hit(key, limit, window_seconds, record=False)

    async def enforce(self, rule: RateLimitRule, subject: str) -> RateLimitResult:
        key = rule.key(subject)
        result = await self.check(key, rule.limit, rule.window_seconds)
        if result.limited:
            logger.warning(
                "rate_limit_exceeded",
                rule=rule.prefix,
                limit=rule.limit,
                retry_after_seconds=result.retry_after_seconds,
            )
            raise RateLimitedError(retry_after_seconds=result.retry_after_seconds)
        return result

    async def reset(self, key: str) -> None:
        if self.cache is not None:
            await self.cache.reset_key(key)
            return
        with self._lock:
            self._hits.pop(key, None)

    async def reset_all(self) -> None:
        if self.cache is not None:
            await self.cache.reset_all()
            return
        with self._lock:
            self._hits.clear()


__all__ = ["RateLimiter", "RateLimitResult", "RateLimitRule"]
