"""
Cache services for resolved attribute values.
"""

import json
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from shared.logging import get_logger


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def glob_escape(text: str) -> str:
    """Escape Redis MATCH pattern metacharacters."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and its absolute expiry (epoch seconds)."""
    value: Any
    expires_at: float


class AttributeCache(ABC):
    """Key/value store with millisecond TTLs and prefix invalidation."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        """Store ``value`` until ``ttl_ms`` milliseconds from now."""

    @abstractmethod
    async def clear_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``; return the count."""


class InMemoryAttributeCache(AttributeCache):
    """Process-local cache. Expired entries are dropped when next read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self.clock():
                del self._entries[key]
                return None
            return entry

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        entry = CacheEntry(value=value, expires_at=self.clock() + ttl_ms / 1000)
        with self._lock:
            self._entries[key] = entry

    async def clear_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisAttributeCache(AttributeCache):
    """Redis-backed cache shared across processes.

    Values are stored as JSON; Redis owns expiry through ``PSETEX``. Read and
    write errors are logged and treated as a miss so resolution carries on
    without the cache.
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and redis_url is None:
            raise ValueError("RedisAttributeCache needs a redis_url or a client")

        self.redis_url = redis_url
        self.redis = client
        self.logger = get_logger("policy_resolver.cache.redis")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self.redis

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            cached_data = await self._client().get(key)
            if not cached_data:
                return None

            data = json.loads(cached_data)
            return CacheEntry(value=data.get("value"), expires_at=data.get("expires_at", 0.0))

        except Exception as e:
            self.logger.error("Error reading cached attribute", cache_key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        try:
            data = {"value": value, "expires_at": time.time() + ttl_ms / 1000}
            await self._client().psetex(key, int(ttl_ms), json.dumps(data, default=str))
            self.logger.debug("Cached attribute", cache_key=key, ttl_ms=ttl_ms)

        except Exception as e:
            self.logger.error("Error caching attribute", cache_key=key, error=str(e))

    async def clear_prefix(self, prefix: str) -> int:
        try:
            client = self._client()
            keys = [key async for key in client.scan_iter(match=f"{glob_escape(prefix)}*")]
            if keys:
                await client.delete(*keys)
            return len(keys)

        except Exception as e:
            self.logger.error("Error clearing cached attributes", prefix=prefix, error=str(e))
            return 0

    async def close(self):
        """Close the Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis attribute cache closed")
