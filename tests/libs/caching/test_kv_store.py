"""Tests for the Redis cache store and the in-process FIFO cache."""

import pytest

from aida_libs.caching.kv_store import FifoMemoryCache, RedisCacheStore


@pytest.mark.asyncio
async def test_redis_store_round_trip_with_ttl(redis_client):
    """Test put/get/delete in a namespace, with TTL applied."""

    store = RedisCacheStore(redis_client, namespace="kv")

    await store.put("greeting", "hello", ttl_seconds=30)

    assert await store.get("greeting") == "hello"
    assert await redis_client.get("kv:greeting") == "hello"
    assert 0 < await redis_client.ttl("kv:greeting") <= 30

    await store.delete("greeting")
    assert await store.get("greeting") is None


@pytest.mark.asyncio
async def test_redis_store_clear_only_touches_namespace(redis_client):
    """Test clear removes keys of its own namespace only."""

    store = RedisCacheStore(redis_client, namespace="kv")
    await store.put("a", "1")
    await store.put("b", "2")
    await redis_client.set("other:c", "3")

    deleted = await store.clear()

    assert deleted == 2
    assert await redis_client.get("other:c") == "3"


def test_fifo_cache_evicts_oldest_insert():
    """Test least-recently-inserted eviction."""

    cache = FifoMemoryCache(capacity=3)
    for key in ["a", "b", "c"]:
        cache.put(key, key.upper())

    cache.get("a")
    cache.put("a", "A2")  # overwrite keeps position
    cache.put("d", "D")

    assert "a" not in cache
    assert list(cache) == ["b", "c", "d"]
    assert cache.evictions == 1
    assert len(cache) == 3


def test_fifo_cache_rejects_zero_capacity():
    """Test capacity must be positive."""

    with pytest.raises(ValueError):
        FifoMemoryCache(capacity=0)
