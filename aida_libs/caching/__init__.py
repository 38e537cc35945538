"""
Caching utilities for the context engine.

This module provides:
- Redis client factory
- Key/value cache stores (Redis TTL tier, in-process FIFO tier)
- Two-tier embedding cache
"""

from aida_libs.caching.embedding_cache import EmbeddingCache
from aida_libs.caching.kv_store import FifoMemoryCache, RedisCacheStore
from aida_libs.caching.redis_client import create_redis_client

__all__ = ["EmbeddingCache", "FifoMemoryCache", "RedisCacheStore", "create_redis_client"]
