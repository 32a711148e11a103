"""
Shared Redis pool and the JSON cache helpers used for booking reads and
Idempotency-Key replay.
"""
import json
from typing import Any, Optional

import redis.asyncio as aioredis
from app.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_max_connections,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


async def cache_set_json(redis: aioredis.Redis, key: str, value: Any, ttl: int) -> None:
    await redis.setex(key, ttl, json.dumps(value))


async def cache_get_json(redis: aioredis.Redis, key: str) -> Optional[Any]:
    raw = await redis.get(key)
    return json.loads(raw) if raw else None


async def cache_delete(redis: aioredis.Redis, *keys: str) -> None:
    if keys:
        await redis.delete(*keys)
