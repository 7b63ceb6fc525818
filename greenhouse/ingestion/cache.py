"""
Greenhouse Platform — Recent Message Cache

Keeps the most recent greenhouse messages in a Redis sorted set so the API can
serve "latest" and "recent" queries without touching TimescaleDB.

Key:    greenhouse:messages   (MESSAGE_CACHE_KEY)
Type:   sorted set
Score:  reading timestamp in epoch millis
Member: reading JSON

Size is capped at MESSAGE_CACHE_MAX (oldest trimmed first) and the key TTL is
renewed on every write.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis

from .config import settings
from .readings import CanonicalReading

logger = logging.getLogger("greenhouse.cache")


class MessageCache:
    """Sorted-set cache of the last N canonical readings."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis] = None,
        key: str = settings.MESSAGE_CACHE_KEY,
        max_messages: int = settings.MESSAGE_CACHE_MAX,
        ttl_hours: int = settings.MESSAGE_CACHE_TTL_HOURS,
        timeout: float = settings.MESSAGE_CACHE_TIMEOUT_S,
    ) -> None:
        self._redis = redis
        self._owns_redis = redis is None
        self.key = key
        self.max_messages = max_messages
        self.ttl_seconds = ttl_hours * 3600
        self.timeout = timeout

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await self._redis.ping()
        logger.info("Message cache connected to Redis (key=%s)", self.key)

    async def close(self) -> None:
        if self._redis and self._owns_redis:
            await self._redis.aclose()

    async def store(self, reading: CanonicalReading) -> None:
        """
        Cache sink entry point used by the message processor.  Bounded by
        `timeout`; a stalled Redis raises TimeoutError instead of holding up
        the tick.
        """
        score = reading.timestamp.timestamp() * 1000
        pipe = self._redis.pipeline()
        pipe.zadd(self.key, {reading.to_json(): score})
        # Keep only the newest max_messages members
        pipe.zremrangebyrank(self.key, 0, -self.max_messages - 1)
        pipe.expire(self.key, self.ttl_seconds)
        await asyncio.wait_for(pipe.execute(), timeout=self.timeout)

    def _decode(self, members: list[str]) -> list[CanonicalReading]:
        readings = []
        for raw in members:
            try:
                readings.append(CanonicalReading.from_dict(json.loads(raw)))
            except (ValueError, KeyError, TypeError):
                logger.error("Cannot decode cached message: %.200s", raw)
        return readings

    async def recent(self, limit: int = 100) -> list[CanonicalReading]:
        """Newest first."""
        members = await self._redis.zrevrange(self.key, 0, limit - 1)
        return self._decode(members)

    async def latest(self) -> Optional[CanonicalReading]:
        readings = await self.recent(1)
        return readings[0] if readings else None

    async def between(self, start: datetime, end: datetime) -> list[CanonicalReading]:
        """Messages with start <= timestamp <= end, newest first."""
        members = await self._redis.zrevrangebyscore(
            self.key, end.timestamp() * 1000, start.timestamp() * 1000
        )
        return self._decode(members)

    async def count(self) -> int:
        return await self._redis.zcard(self.key)

    async def clear(self) -> None:
        await self._redis.delete(self.key)
        logger.info("Greenhouse message cache cleared")

    async def stats(self) -> dict:
        return {
            "total_messages": await self.count(),
            "ttl_seconds": await self._redis.ttl(self.key),
            "max_capacity": self.max_messages,
        }
