"""
Redis client factory for the engine's cache and store layers.

Provides:
- Async Redis client with connection pooling
- Graceful degradation (``None`` when Redis is unavailable)
- Health check and close helpers

Clients are created by the application factory and injected into components;
nothing here is held at module level.
"""

from typing import Optional

import structlog
import redis.asyncio as redis

logger = structlog.get_logger(__name__)


def _redact(redis_url: str) -> str:
    """Strip credentials from a Redis URL for logging."""
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url.split("//")[-1]


async def create_redis_client(redis_url: Optional[str], max_connections: int = 20) -> Optional[redis.Redis]:
    """
    Create an async Redis client and verify the connection.

    Args:
        redis_url: Redis connection URL, ``None`` disables Redis
        max_connections: Connection pool size

    Returns:
        Redis client instance or None if connection fails
    """
    if not redis_url:
        logger.warning(
            "Redis URL not configured, external cache and store disabled",
            hint="Set AIDA_REDIS_URL to enable them",
        )
        return None

    try:
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await client.ping()

        logger.info(
            "Redis client initialized successfully",
            url=_redact(redis_url),
            max_connections=max_connections,
        )
        return client

    except redis.ConnectionError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(redis_url),
            hint="Check AIDA_REDIS_URL and ensure Redis server is running",
        )
        return None


async def close_redis_client(client: Optional[redis.Redis]) -> None:
    """Close a Redis client connection."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Redis client closed")
    except redis.RedisError as e:
        logger.warning("Error closing Redis client", error=str(e))


async def health_check(client: Optional[redis.Redis]) -> bool:
    """
    Check Redis health.

    Returns:
        True if Redis is healthy, False otherwise
    """
    if client is None:
        return False
    try:
        return await client.ping() is True
    except redis.RedisError as e:
        logger.error("Redis health check failed", error=str(e))
        return False
