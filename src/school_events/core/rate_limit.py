"""
Rate Limiting Module

Sliding-window rate limiting for sensitive endpoints, backed by the shared
Redis client with an in-process fallback when Redis is not connected.

Applied to:
- Login (slows credential stuffing in addition to per-account lockout)
- Password reset requests and reset token consumption
"""

import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

from fastapi import HTTPException, Request, status
from redis.asyncio import Redis
from redis.exceptions import RedisError

from school_events.core import redis as redis_store

logger = logging.getLogger(__name__)

# In-memory fallback: {key: [timestamp, ...]} and {key: time its window empties}
_memory_store: dict[str, list[float]] = {}
_memory_expiry: dict[str, float] = {}


class RateLimitExceeded(HTTPException):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, limit: int, window_seconds: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "RATE_LIMIT_EXCEEDED",
                "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                "retry_after_seconds": window_seconds,
            },
            headers={"Retry-After": str(window_seconds)},
        )


async def _check_rate_limit_redis(
    client: Redis,
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """
    Sliding window check using a Redis sorted set of request timestamps.

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    now = time.time()
    window_start = now - window_seconds

    pipe = client.pipeline()
    pipe.zremrangebyscore(key, 0, window_start)
    pipe.zcard(key)
    pipe.zadd(key, {str(now): now})
    pipe.expire(key, window_seconds)

    results = await pipe.execute()
    current_count = results[1]

    return current_count < limit


def _evict_expired(now: float) -> None:
    """Forget keys whose window has emptied."""
    expired = [key for key, expires_at in _memory_expiry.items() if expires_at <= now]
    for key in expired:
        del _memory_expiry[key]
        _memory_store.pop(key, None)


def _store_window(key: str, timestamps: list[float], window_seconds: int) -> None:
    if not timestamps:
        _memory_store.pop(key, None)
        _memory_expiry.pop(key, None)
        return
    _memory_store[key] = timestamps
    _memory_expiry[key] = timestamps[-1] + window_seconds


def _check_rate_limit_memory(key: str, limit: int, window_seconds: int) -> bool:
    """
    Sliding window check against process memory.

    Only limits requests served by this process.
    """
    now = time.time()
    window_start = now - window_seconds

    _evict_expired(now)
    timestamps = [ts for ts in _memory_store.get(key, []) if ts > window_start]

    if len(timestamps) >= limit:
        _store_window(key, timestamps, window_seconds)
        return False

    timestamps.append(now)
    _store_window(key, timestamps, window_seconds)
    return True


async def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Check if a request is within rate limits.

    Uses Redis when connected, otherwise the in-memory window.

    Args:
        key: Unique key for this rate limit (e.g., "auth:login:10.0.0.1")
        limit: Maximum requests allowed in the window
        window_seconds: Time window in seconds

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    client = redis_store.redis_client

    if client is not None:
        try:
            return await _check_rate_limit_redis(client, key, limit, window_seconds)
        except RedisError as e:
            logger.warning(f"Redis rate limit check failed, using memory: {e}")

    return _check_rate_limit_memory(key, limit, window_seconds)


def client_ip_key(prefix: str) -> Callable[[Request], str]:
    """Build a key function that limits per client IP under ``prefix``."""

    def key_func(request: Request) -> str:
        client_ip = request.client.host if request.client else "unknown"
        return f"rate_limit:{prefix}:{client_ip}"

    return key_func


def rate_limit(
    limit: int = 10,
    window_seconds: int = 60,
    key_func: Callable[[Request], str] | None = None,
):
    """
    Rate limiting decorator for FastAPI endpoints.

    The decorated endpoint must accept a ``request: Request`` parameter.

    Usage:
        @router.post("/login")
        @rate_limit(limit=10, window_seconds=60, key_func=client_ip_key("auth:login"))
        async def login(request: Request, ...):
            ...

    Raises:
        RateLimitExceeded: When rate limit is exceeded (HTTP 429)
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request: Request | None = kwargs.get("request")
            if request is None:
                request = next((arg for arg in args if isinstance(arg, Request)), None)

            if request is None:
                logger.warning(
                    f"Rate limit decorator on {func.__name__} couldn't find Request object"
                )
                return await func(*args, **kwargs)

            if key_func:
                key = key_func(request)
            else:
                client_ip = request.client.host if request.client else "unknown"
                key = f"rate_limit:{client_ip}:{request.url.path}"

            if not await check_rate_limit(key, limit, window_seconds):
                logger.warning(f"Rate limit exceeded for {key}: {limit}/{window_seconds}s")
                raise RateLimitExceeded(limit, window_seconds)

            return await func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "rate_limit",
    "check_rate_limit",
    "client_ip_key",
    "RateLimitExceeded",
]
