"""
Redis client lifecycle.

Redis is optional shared state: it backs the rate limiter and scheduler
leases when reachable. Without it both degrade to in-process behaviour.
"""
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from consensus_ai.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: Optional[Redis] = None


async def initialize_redis(redis_url: Optional[str]) -> bool:
    """
    Connect to Redis and verify the connection.

    Returns:
        True if Redis is usable, False otherwise
    """
    global _redis_client

    if not redis_url:
        logger.info("redis_disabled", reason="REDIS_URL not set")
        return False

    try:
        logger.info("redis_initializing", url=redis_url)
        client = redis.from_url(
            redis_url,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("redis_initialized")
        return True
    except Exception as e:
        logger.error(
            "redis_initialization_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        _redis_client = None
        return False


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_client

    if _redis_client:
        try:
            await _redis_client.aclose()
            logger.info("redis_closed")
        except Exception as e:
            logger.error(
                "redis_close_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            _redis_client = None


def get_redis_client() -> Optional[Redis]:
    """Get the Redis client, or None when Redis is not available."""
    return _redis_client
