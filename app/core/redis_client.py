"""
Redis Client: async singleton.

Used for the webhook rate-limit counters, which must survive process
restarts and be shared by every web instance.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Return the shared Redis client, connecting on first use."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info(
            "Redis client initialized",
            extra_data={"url": _mask_redis_url(settings.REDIS_URL)},
        )
    return _redis_client


async def incr_fixed_window(key: str, window_seconds: int) -> int:
    """
    Increment a fixed-window counter and return the new count.

    The TTL is set when the key is created, so the counter disappears when
    its window ends.
    """
    client = await get_redis()
    count = await client.incr(key)
    if count == 1:
        await client.expire(key, window_seconds)
    return count


async def close_redis() -> None:
    """Close the shared client (app shutdown / end of a Celery task)."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
