"""
Per-identity request rate limiting.

Fixed window counter: each identity (user id, or "anon:<client>" for
anonymous callers) gets `limit` requests per window; the window restarts
once `now - window_start` exceeds the window length.

The check runs before any cache lookup. A failing Redis store degrades to
a process-local window, so limits still hold during an outage.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Optional

from core.errors import CacheUnavailable
from core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


@dataclass
class RateLimitWindow:
    identity: str
    window_start: float
    count: int
    limit: int


def _to_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


class InMemoryRateLimiter:
    """Process-local fixed windows."""

    name = "in_memory"

    def __init__(
        self,
        limit: int = 20,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = Lock()

    async def check(self, identity: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            window = self._windows.get(identity)
            if window is None or now - window.window_start > self.window_seconds:
                window = RateLimitWindow(identity, now, 0, self.limit)
                self._windows[identity] = window

            reset_at = _to_datetime(window.window_start + self.window_seconds)
            if window.count >= window.limit:
                return RateLimitDecision(False, 0, reset_at, self.limit)

            window.count += 1
            return RateLimitDecision(True, window.limit - window.count, reset_at, self.limit)

    def reset(self, identity: Optional[str] = None) -> None:
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(identity, None)


class RedisRateLimiter:
    """
    Shared fixed windows in Redis: INCR plus EXPIRE on the first hit.

    While Redis is unreachable, checks are answered by a process-local
    InMemoryRateLimiter with the same limit and window.
    """

    name = "redis"

    def __init__(
        self,
        client,
        limit: int = 20,
        window_seconds: int = 3600,
        key_prefix: str = "recs:ratelimit",
        clock: Callable[[], float] = time.time,
        fallback: Optional[InMemoryRateLimiter] = None,
    ):
        self._redis = client
        self.limit = limit
        self.window_seconds = window_seconds
        self._prefix = key_prefix
        self._clock = clock
        self._fallback = fallback or InMemoryRateLimiter(limit, window_seconds, clock)

    def _key(self, identity: str) -> str:
        return f"{self._prefix}:{identity}"

    async def check(self, identity: str) -> RateLimitDecision:
        key = self._key(identity)
        now = self._clock()
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self.window_seconds)
                ttl_ms = self.window_seconds * 1000
            else:
                ttl_ms = await self._redis.pttl(key)
                if ttl_ms is None or ttl_ms < 0:
                    # counter lost its expiry; restart the window
                    await self._redis.expire(key, self.window_seconds)
                    ttl_ms = self.window_seconds * 1000
        except Exception as e:
            logger.warning(
                "Rate limit store unavailable, using in-process window",
                identity=identity,
                error=str(CacheUnavailable(str(e))),
            )
            return await self._fallback.check(identity)

        reset_at = _to_datetime(now + ttl_ms / 1000.0)
        if count > self.limit:
            return RateLimitDecision(False, 0, reset_at, self.limit)
        return RateLimitDecision(True, self.limit - count, reset_at, self.limit)


def rate_limit_identity(user_id: Optional[str], client_id: Optional[str]) -> str:
    """User id when known, otherwise an anonymous client identifier."""
    if user_id:
        return f"user:{user_id}"
    return f"anon:{client_id or 'unknown'}"
