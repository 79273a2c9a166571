"""
Redis client for checkpoint persistence.

Provides:
- Async Redis client with connection pooling
- Fakeredis client when running in the test environment
- Graceful degradation: returns None when Redis is not configured or unreachable
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from sopflow.common.settings import WorkflowSettings

logger = structlog.get_logger(__name__)

_redis_client: Optional[redis.Redis] = None


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url.split("//")[-1]


async def get_redis_client(settings: WorkflowSettings) -> Optional[redis.Redis]:
    """
    Get or create the shared async Redis client.

    Args:
        settings: Workflow settings carrying ``redis_url`` and ``app_env``

    Returns:
        Redis client instance, or None if Redis is unavailable
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    if settings.app_env == "test":
        from fakeredis import aioredis as fakeredis

        _redis_client = fakeredis.FakeRedis(decode_responses=True)
        logger.info("Using fakeredis for testing")
        return _redis_client

    if not settings.redis_url:
        logger.warning(
            "SOPFLOW_REDIS_URL not configured, checkpointing will be disabled",
            hint="Set SOPFLOW_REDIS_URL to enable checkpoint persistence",
        )
        return None

    client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
        socket_timeout=5,
        socket_connect_timeout=5,
        retry_on_timeout=True,
    )
    try:
        await client.ping()
    except redis.RedisError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redacted(settings.redis_url),
        )
        await client.aclose()
        return None

    logger.info("Redis client initialized", url=_redacted(settings.redis_url))
    _redis_client = client
    return _redis_client


async def close_redis_client() -> None:
    """Close the shared Redis client."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except redis.RedisError as e:
            logger.warning("Error closing Redis client", error=str(e))
        finally:
            _redis_client = None
