from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("uvicorn.error")

RING_KEY = "debug:last_events"


class SampleRing:
    """
    Fixed-capacity, newest-first ring of raw upstream event samples.

    Each append pushes, trims and refreshes the expiry in a single MULTI, so the list
    never holds more than `capacity` entries and concurrent streams evict oldest-first.
    """

    def __init__(self, redis: Redis, *, capacity: int, ttl_seconds: int = 3600, key: str = RING_KEY) -> None:
        self._redis = redis
        self.capacity = max(1, capacity)
        self._ttl_seconds = ttl_seconds
        self._key = key

    async def append(self, sample: dict[str, Any]) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lpush(self._key, json.dumps(sample, ensure_ascii=False))
                pipe.ltrim(self._key, 0, self.capacity - 1)
                if self._ttl_seconds > 0:
                    pipe.expire(self._key, self._ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            logger.warning("ring.append_failed err=%s", e)

    async def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        n = self.capacity if limit is None else max(0, min(limit, self.capacity))
        if n == 0:
            return []
        items = await self._redis.lrange(self._key, 0, n - 1)
        out: list[dict[str, Any]] = []
        for raw in items:
            try:
                obj = json.loads(raw)
            except ValueError:
                obj = {"raw": raw}
            out.append(obj if isinstance(obj, dict) else {"raw": obj})
        return out
