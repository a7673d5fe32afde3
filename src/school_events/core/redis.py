"""
Redis Configuration

Shared async Redis client. Used by the rate limiter; Redis is optional and
the application keeps serving requests when it is unreachable.
"""

import logging

from redis.asyncio import Redis, from_url

from school_events.core.config import settings

logger = logging.getLogger(__name__)

redis_client: Redis | None = None


async def init_redis() -> Redis:
    """
    Connect to Redis and verify the connection.

    Call this on application startup.
    """
    global redis_client
    client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    redis_client = client
    logger.info("Redis connection established")
    return redis_client


async def get_redis() -> Redis | None:
    """
    Get the shared Redis client, or None if Redis is not connected.

    Usage in FastAPI:
        @router.get("/cached")
        async def cached(redis: Redis | None = Depends(get_redis)):
            ...
    """
    return redis_client


def is_redis_available() -> bool:
    """Check if the Redis client is initialized."""
    return redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
