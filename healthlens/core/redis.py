"""
Optional async Redis client for the analysis cache. If redis_url is empty or connection fails, returns None.
Nothing is preloaded; the cache fills on gateway misses.
"""
import logging
from typing import Any

from healthlens.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: Any = None


async def get_redis_client(url: str | None = None) -> Any:
    """Lazy singleton: one async Redis client or None if disabled/unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = (url if url is not None else get_settings().redis_url or "").strip()
    if not url:
        return None
    try:
        from redis.asyncio import Redis
        client = Redis.from_url(url, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis analysis cache connected: %s", url.split("@")[-1] if "@" in url else url)
        return _redis_client
    except Exception as e:
        logger.warning("Redis unavailable (falling back to in-process cache): %s", e, exc_info=False)
        return None


async def redis_status() -> dict:
    """Ping result for the health endpoint; never raises."""
    if _redis_client is None:
        return {"redis": "unavailable"}
    try:
        await _redis_client.ping()
        return {"redis": "ok"}
    except Exception as e:
        logger.warning("Redis health ping failed: %s", e)
        return {"redis": "error", "message": str(e)}


async def close_redis() -> None:
    """Graceful shutdown: close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.warning("Redis close error: %s", e)
        _redis_client = None
