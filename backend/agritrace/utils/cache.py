"""Redis caching for fleet-wide statistics.

The grouped scans behind /api/analytics are cheap at small volume but run
on every dashboard refresh, so their results are cached in Redis and
invalidated wholesale ("stats:*") whenever a stage record is written.

Redis is optional at runtime: any RedisError falls back to the uncached
call, and ``CACHE_ENABLED=false`` skips Redis entirely.
"""

import functools
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Callable, Optional

import redis.asyncio as redis

from agritrace.config import settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create the shared Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
        )
    return _redis_client


async def close_redis():
    """Close the Redis connection (called on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def cache_key(**params) -> str:
    """Deterministic hash of the call's simple keyword arguments."""
    if not params:
        return "default"
    key_data = json.dumps(params, sort_keys=True)
    return hashlib.md5(key_data.encode()).hexdigest()


def _serialize(result):
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    if isinstance(result, list):
        return [_serialize(item) for item in result]
    if isinstance(result, dict):
        return {k: _serialize(v) for k, v in result.items()}
    return result


def cached(ttl: int | None = None, prefix: str = "cache"):
    """Cache an async endpoint's result in Redis.

    Only keyword arguments of simple types take part in the key; injected
    dependencies (sessions and the like) are skipped.

    Cache keys: {prefix}:{function_name}:{params_hash}
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not settings.cache_enabled:
                return await func(*args, **kwargs)

            params = {}
            for k, v in kwargs.items():
                if isinstance(v, (int, str, bool, float, type(None))):
                    params[k] = v
                elif isinstance(v, (date, datetime)):
                    params[k] = v.isoformat()
            key = f"{prefix}:{func.__name__}:{cache_key(**params)}"

            try:
                client = await get_redis()
                hit = await client.get(key)
                if hit:
                    logger.debug("Cache HIT: %s", key)
                    return json.loads(hit)
                logger.debug("Cache MISS: %s", key)

                result = await func(*args, **kwargs)
                await client.setex(
                    key, ttl or settings.stats_cache_ttl, json.dumps(_serialize(result))
                )
                return result
            except redis.RedisError as e:
                logger.warning("Redis error (falling back to uncached): %s", e)
                return await func(*args, **kwargs)

        return wrapper

    return decorator


async def invalidate_cache(pattern: str):
    """Delete every key matching ``pattern`` (e.g. "stats:*")."""
    if not settings.cache_enabled:
        return
    try:
        client = await get_redis()
        keys = [key async for key in client.scan_iter(match=pattern)]
        if keys:
            await client.delete(*keys)
            logger.info("Invalidated %d cache keys matching %s", len(keys), pattern)
    except redis.RedisError as e:
        logger.warning("Failed to invalidate cache: %s", e)
