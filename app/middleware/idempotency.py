from typing import Optional

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.redis_client import cache_get_json, cache_set_json


IDEMPOTENCY_TTL = 86400  # 24 hours


def _cache_key(request: Request, key: str) -> str:
    # Scoped per route so one key cannot replay another endpoint's response
    return f"idempotency:{request.url.path}:{key}"


async def check_idempotency(
    request: Request,
    redis: aioredis.Redis,
) -> Optional[Response]:
    """
    Returns the stored response if the Idempotency-Key was already used on
    this route, otherwise None (proceed normally).
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    stored = await cache_get_json(redis, _cache_key(request, key))
    if stored:
        return JSONResponse(
            content=stored["body"],
            status_code=stored["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(
    request: Request,
    redis: aioredis.Redis,
    status_code: int,
    body: dict,
) -> None:
    """Keep the booking or payment response for the key's 24h window."""
    key = request.headers.get("Idempotency-Key")
    if not key:
        return
    await cache_set_json(
        redis,
        _cache_key(request, key),
        {"status_code": status_code, "body": body},
        IDEMPOTENCY_TTL,
    )
