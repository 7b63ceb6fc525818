"""
Greenhouse Platform — Live Update Broadcaster

Publishes every accepted reading to a Redis pub/sub channel; the API's
WebSocket endpoint relays that channel to dashboards and the mobile app.

Channel: {BROADCAST_PREFIX}/messages   (default /topic/greenhouse/messages)

All tenants share one channel.  Each message embeds tenant_id and
greenhouse_id so subscribers can filter.
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis

from .config import settings
from .readings import CanonicalReading

logger = logging.getLogger("greenhouse.broadcast")


class Broadcaster:
    """Live-update sink: JSON-encodes readings onto the shared channel."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis] = None,
        channel: str = settings.broadcast_channel,
        timeout: float = settings.BROADCAST_TIMEOUT_S,
    ) -> None:
        self._redis = redis
        self._owns_redis = redis is None
        self.channel = channel
        self.timeout = timeout
        self._published = 0

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
            )
        logger.info("Broadcaster ready on channel %s", self.channel)

    async def close(self) -> None:
        if self._redis and self._owns_redis:
            await self._redis.aclose()

    async def publish(self, reading: CanonicalReading) -> int:
        """
        Publish one reading.  Bounded by `timeout` so a stalled Redis cannot
        hold up the tick loop.  Returns the subscriber count reported by Redis.
        """
        if self._redis is None:
            raise RuntimeError("Broadcaster is not connected")
        receivers = await asyncio.wait_for(
            self._redis.publish(self.channel, reading.to_json()),
            timeout=self.timeout,
        )
        self._published += 1
        logger.debug(
            "Broadcast reading tenant=%s greenhouse=%s to %s subscribers",
            reading.tenant_id, reading.greenhouse_id, receivers,
        )
        return receivers

    @property
    def stats(self) -> dict:
        return {"published": self._published}
