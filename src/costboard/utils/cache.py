"""
Caching utilities for the cost dashboard.

Caches unified totals and recommendation results so repeated page loads do
not re-query every provider. Supports an in-process memory backend and a
Redis backend with the same async interface.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a value from the cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Set a value in the cache with optional TTL."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def clear(self, prefix: str = "") -> int:
        """Remove entries whose key starts with ``prefix``; returns the count removed."""
        pass

    async def close(self) -> None:
        pass


class MemoryCache(CacheBackend):
    """In-memory cache backend with TTL support and LRU eviction."""

    def __init__(self, max_size: int = 500, default_ttl: int = 300):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._cache: dict[str, dict[str, Any]] = {}
        self._access_order: list[str] = []

    def _cleanup_expired(self):
        """Remove expired entries from cache."""
        current_time = time.monotonic()
        expired_keys = [key for key, entry in self._cache.items() if current_time > entry["expires_at"]]
        for key in expired_keys:
            del self._cache[key]
        if expired_keys:
            self._access_order = [key for key in self._access_order if key in self._cache]

    def _evict_if_needed(self):
        """Evict least recently used entries if cache is full."""
        if len(self._cache) >= self.max_size:
            num_to_remove = max(1, self.max_size // 5)
            self._access_order = [key for key in self._access_order if key in self._cache]
            for key in self._access_order[:num_to_remove]:
                self._cache.pop(key, None)
            self._access_order = self._access_order[num_to_remove:]

    def _touch(self, key: str):
        if key in self._access_order:
            self._access_order.remove(key)
        self._access_order.append(key)

    async def get(self, key: str) -> Any | None:
        self._cleanup_expired()
        entry = self._cache.get(key)
        if entry is None:
            return None
        self._touch(key)
        return entry["value"]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        self._cleanup_expired()
        if key not in self._cache:
            self._evict_if_needed()
        ttl = ttl if ttl is not None else self.default_ttl
        self._cache[key] = {"value": value, "expires_at": time.monotonic() + ttl}
        self._touch(key)
        return True

    async def delete(self, key: str) -> bool:
        if key in self._cache:
            del self._cache[key]
            if key in self._access_order:
                self._access_order.remove(key)
            return True
        return False

    async def clear(self, prefix: str = "") -> int:
        keys = [key for key in self._cache if key.startswith(prefix)]
        for key in keys:
            await self.delete(key)
        return len(keys)

    def size(self) -> int:
        self._cleanup_expired()
        return len(self._cache)


class RedisCache(CacheBackend):
    """Redis cache backend storing JSON-encoded values."""

    def __init__(self, redis_url: str, default_ttl: int = 300, namespace: str = "costboard"):
        self.client = redis.from_url(redis_url, decode_responses=True)
        self.default_ttl = default_ttl
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(self._key(key))
        except redis.RedisError as e:
            logger.warning(f"Redis cache read failed for {key}: {e}")
            return None
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            await self.client.setex(
                self._key(key), ttl if ttl is not None else self.default_ttl, json.dumps(value, default=str)
            )
        except redis.RedisError as e:
            logger.warning(f"Redis cache write failed for {key}: {e}")
            return False
        return True

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(self._key(key)))
        except redis.RedisError as e:
            logger.warning(f"Redis cache delete failed for {key}: {e}")
            return False

    async def clear(self, prefix: str = "") -> int:
        removed = 0
        try:
            async for key in self.client.scan_iter(match=f"{self._key(prefix)}*"):
                removed += await self.client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Redis cache clear failed for prefix {prefix!r}: {e}")
        return removed

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


def build_cache(config: dict[str, Any]) -> CacheBackend:
    """Create the configured cache backend (``memory`` or ``redis``)."""
    backend = (config.get("backend") or "memory").lower()
    ttl = int(config.get("total_ttl_seconds", 300))
    if backend == "redis":
        redis_url = config.get("redis_url")
        if not redis_url:
            raise ValueError("cache.redis_url is required for the redis cache backend")
        logger.info("Using Redis cache backend")
        return RedisCache(redis_url, default_ttl=ttl)
    return MemoryCache(max_size=int(config.get("max_size", 500)), default_ttl=ttl)
