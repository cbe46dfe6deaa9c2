from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis

logger = logging.getLogger("uvicorn.error")


def create_redis(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


async def get_json(redis: Redis, key: str) -> Any:
    raw = await redis.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("kv.corrupt key=%s", key.split(":", 1)[0])
        return None


async def set_json(redis: Redis, key: str, obj: Any, ttl: int | None = None) -> None:
    data = json.dumps(obj, ensure_ascii=False)
    if ttl:
        await redis.set(key, data, ex=ttl)
    else:
        await redis.set(key, data)
