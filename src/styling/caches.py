"""
Multi-tier cache and dedup layer.

Four independent caches, each with its own key derivation and namespace:

1. RequestCache: in-process LRU for identical requests (short TTL) with
   dogpile protection, so concurrent identical requests share one run.
2. PersistentResultCache: cross-instance result cache (Redis when enabled).
3. ImageCache: generated image URLs keyed by prompt + palette.
4. PhotoDedupCache: per-user 24h lookup of a prior full response by photo hash.

Contract for all four: get() returns the value or None, set() stores with
a TTL. Neither ever raises; storage failures are logged and degrade to a
miss / no-op.

Backends follow the same two-backend shape as the rest of the service:
InMemoryCacheBackend for development/tests, RedisCacheBackend in production.
While Redis is unreachable the Redis backend serves from an in-process
store, so caching keeps working per instance.
"""

import asyncio
import json
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Tuple

from core.errors import CacheUnavailable
from core.logging import LoggerMixin, get_logger
from styling.fingerprints import image_cache_key

logger = get_logger(__name__)


# =============================================================================
# Backends
# =============================================================================

class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheBackend:
    """
    Process-local key/value store with per-key expiry.

    Note: entries are lost on restart and not shared across instances.
    """

    name = "in_memory"

    def __init__(self, max_entries: int = 10_000):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = Lock()
        self._max_entries = max_entries

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                del self._data[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            if len(self._data) >= self._max_entries:
                self._evict_expired()
                if len(self._data) >= self._max_entries:
                    # drop the entry closest to expiry
                    oldest = min(self._data, key=lambda k: self._data[k][1])
                    del self._data[oldest]
            self._data[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]

    def __len__(self) -> int:
        return len(self._data)


class RedisCacheBackend:
    """
    Redis-backed store (redis.asyncio client, decode_responses=True).

    A failing Redis command is served by a process-local
    InMemoryCacheBackend instead, so an outage shrinks the caches to one
    instance rather than emptying them.
    """

    name = "redis"

    def __init__(self, client, fallback: Optional[InMemoryCacheBackend] = None):
        self._redis = client
        self._fallback = fallback or InMemoryCacheBackend()

    def _degraded(self, operation: str, key: str, error: Exception) -> None:
        logger.warning(
            "Redis cache unavailable, using in-process backend",
            operation=operation,
            namespace=":".join(key.split(":")[:2]),
            error=str(error),
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(key)
        except Exception as e:
            self._degraded("get", key, e)
            return await self._fallback.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=max(1, int(ttl_seconds)))
        except Exception as e:
            self._degraded("set", key, e)
            await self._fallback.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._fallback.delete(key)
        try:
            await self._redis.delete(key)
        except Exception as e:
            self._degraded("delete", key, e)


# =============================================================================
# JSON cache with degrade-to-miss semantics
# =============================================================================

class JsonCache(LoggerMixin):
    """Namespaced JSON cache over a backend; failures are misses."""

    def __init__(self, backend: CacheBackend, namespace: str, ttl_seconds: int):
        self._backend = backend
        self._namespace = namespace
        self.ttl_seconds = ttl_seconds

    @property
    def backend_name(self) -> str:
        return self._backend.name

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._backend.get(self._key(key))
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            self._report(CacheUnavailable(f"get failed: {e}"), "get")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._backend.set(
                self._key(key),
                json.dumps(value, ensure_ascii=False),
                ttl_seconds or self.ttl_seconds,
            )
        except Exception as e:
            self._report(CacheUnavailable(f"set failed: {e}"), "set")

    async def delete(self, key: str) -> None:
        try:
            await self._backend.delete(self._key(key))
        except Exception as e:
            self._report(CacheUnavailable(f"delete failed: {e}"), "delete")

    def _report(self, error: CacheUnavailable, operation: str) -> None:
        self.logger.warning(
            "Cache unavailable, degrading to miss",
            cache=self._namespace,
            operation=operation,
            backend=self._backend.name,
            error=str(error),
        )


class PersistentResultCache(JsonCache):
    """Cross-instance cache of full recommendation results."""

    def __init__(self, backend: CacheBackend, ttl_seconds: int = 3600):
        super().__init__(backend, "recs:result", ttl_seconds)


class ImageCache(JsonCache):
    """Generated image URLs keyed by prompt + palette fingerprint."""

    def __init__(self, backend: CacheBackend, ttl_seconds: int = 7 * 86400):
        super().__init__(backend, "recs:image", ttl_seconds)

    async def get_image(self, prompt: str, colors: Iterable[str]) -> Optional[str]:
        value = await self.get(image_cache_key(prompt, colors))
        if isinstance(value, dict):
            return value.get("url")
        return None

    async def set_image(self, prompt: str, colors: Iterable[str], url: str) -> None:
        await self.set(
            image_cache_key(prompt, colors),
            {"url": url, "cached_at": int(time.time())},
        )


class PhotoDedupCache(JsonCache):
    """A user's prior full response for an identical photo."""

    def __init__(self, backend: CacheBackend, ttl_seconds: int = 86400):
        super().__init__(backend, "recs:photo", ttl_seconds)

    @staticmethod
    def dedup_key(user_id: str, photo_digest: str) -> str:
        return f"{user_id}:{photo_digest}"

    async def get_response(self, user_id: str, photo_digest: str) -> Optional[Dict[str, Any]]:
        value = await self.get(self.dedup_key(user_id, photo_digest))
        return value if isinstance(value, dict) else None

    async def set_response(self, user_id: str, photo_digest: str, body: Dict[str, Any]) -> None:
        await self.set(self.dedup_key(user_id, photo_digest), body)


# =============================================================================
# In-process request cache
# =============================================================================

class RequestCache(LoggerMixin):
    """
    LRU + TTL cache for whole-request results, in process memory.

    get_or_fetch() coalesces concurrent misses on the same key: the first
    caller runs fetch(), later callers await the same future.
    """

    def __init__(self, max_entries: int = 50, ttl_seconds: int = 600):
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self.ttl_seconds
        self._entries[key] = (value, time.monotonic() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_fetch(
        self, key: str, fetch: Callable[[], Awaitable[Any]]
    ) -> Tuple[Any, bool]:
        """
        Return (value, shared) where shared is True when no new work ran.

        A fetch failure is propagated to every waiter and nothing is cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached, True

        inflight = self._inflight.get(key)
        if inflight is not None:
            self.logger.info("Joining in-flight request", cache_key=key[:12])
            return await asyncio.shield(inflight), True

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # mark retrieved; joiners still receive it
            future.exception()
            raise
        else:
            self.set(key, value)
            future.set_result(value)
            return value, False
        finally:
            self._inflight.pop(key, None)

    def stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "inflight": len(self._inflight),
        }


def build_cache_backend(redis_client=None) -> CacheBackend:
    """Redis backend when a client is supplied, otherwise in-memory."""
    if redis_client is not None:
        logger.info("Using Redis cache backend")
        return RedisCacheBackend(redis_client)
    logger.info("No Redis client, using in-memory cache backend")
    return InMemoryCacheBackend()
