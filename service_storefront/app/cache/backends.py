"""
Key/value cache backends for smart rule results.

Backends store opaque strings with a TTL and support prefix deletion. Any
failure to reach the backend surfaces as `CacheUnavailableError`; deciding
what a failure means is left to the caller.
"""

import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import CacheUnavailableError
from shared.logging import get_logger


class CacheBackend(ABC):
    """Narrow cache interface used by `RuleResultCache`."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int):
        ...

    @abstractmethod
    async def delete(self, key: str) -> int:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with `prefix`. Returns the number deleted."""

    async def start(self):
        pass

    async def stop(self):
        pass

    async def health_check(self) -> bool:
        return True


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache with monotonic-clock expiry."""

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int):
        now = self._clock()
        self._sweep(now)
        self._entries[key] = (value, now + ttl_seconds)

    def _sweep(self, now: float):
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    async def delete(self, key: str) -> int:
        return 1 if self._entries.pop(key, None) is not None else 0

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def keys(self):
        return list(self._entries)


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.logger = get_logger("storefront.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Start the Redis cache."""
        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30
        )

        # The client reconnects on demand; until then execution runs uncached
        try:
            await self.redis.ping()
            self.logger.info("Redis cache started")
        except (RedisError, OSError) as e:
            self.logger.warning("Redis cache unreachable at startup, serving uncached", error=str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis cache stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise CacheUnavailableError("Redis cache is not started")
        return self.redis

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client().get(key)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis read failed", {"key": key, "error": str(e)})

    async def set(self, key: str, value: str, ttl_seconds: int):
        try:
            await self._client().setex(key, ttl_seconds, value)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis write failed", {"key": key, "error": str(e)})

    async def delete(self, key: str) -> int:
        try:
            return await self._client().delete(key)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis delete failed", {"key": key, "error": str(e)})

    async def delete_prefix(self, prefix: str) -> int:
        # SCAN rather than KEYS so large keyspaces do not block the server
        client = self._client()
        deleted = 0
        try:
            batch = []
            async for key in client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis prefix delete failed", {"prefix": prefix, "error": str(e)})
        return deleted

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self._client().ping()
            return True
        except (RedisError, OSError, CacheUnavailableError):
            return False
