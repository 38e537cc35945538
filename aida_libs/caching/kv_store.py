"""
Key/value cache stores.

``CacheStore`` is the interface components depend on; ``RedisCacheStore`` is the
external TTL tier and ``FifoMemoryCache`` is the bounded in-process tier. Both
are created per owner and injected, so tests can build a fresh store per case.
"""

from collections import OrderedDict
from typing import Generic, Hashable, Iterator, Optional, Protocol, TypeVar

import structlog
import redis.asyncio as redis

logger = structlog.get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class CacheStore(Protocol):
    """External key/value cache capability."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class RedisCacheStore:
    """
    Redis-backed ``CacheStore`` with a key namespace.

    Errors propagate as ``redis.RedisError``; callers treat this tier as
    disposable and degrade on failure.

    Usage:
        store = RedisCacheStore(redis_client, namespace="aida:emb")
        await store.put("abc", "[0.1, 0.2]", ttl_seconds=86400)
        value = await store.get("abc")
    """

    def __init__(self, redis_client: redis.Redis, namespace: str = "aida"):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(self._key(key))

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.redis.setex(self._key(key), ttl_seconds, value)
        else:
            await self.redis.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def clear(self) -> int:
        """Delete every key in this namespace. Returns the number removed."""
        deleted = 0
        async for key in self.redis.scan_iter(match=f"{self.namespace}:*", count=100):
            deleted += await self.redis.delete(key)
        logger.info("Cache namespace cleared", namespace=self.namespace, deleted=deleted)
        return deleted


class FifoMemoryCache(Generic[K, V]):
    """
    Bounded in-process map with least-recently-inserted eviction.

    Reads never change eviction order; re-inserting an existing key keeps its
    original position.
    """

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self.evictions = 0

    def get(self, key: K) -> Optional[V]:
        return self._entries.get(key)

    def put(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries[key] = value
            return
        while len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1
        self._entries[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[K]:
        return iter(self._entries)

    def clear(self) -> None:
        self._entries.clear()
