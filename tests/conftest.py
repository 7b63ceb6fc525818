import asyncio
from datetime import datetime, timezone

import pytest

from greenhouse.ingestion.rate_limiter import RateLimiter
from greenhouse.ingestion.readings import CanonicalReading, SourceKind


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops = []

    def zadd(self, key, mapping):
        self._ops.append(("zadd", key, mapping))
        return self

    def zremrangebyrank(self, key, start, end):
        self._ops.append(("zremrangebyrank", key, start, end))
        return self

    def expire(self, key, seconds):
        self._ops.append(("expire", key, seconds))
        return self

    async def execute(self):
        results = []
        for name, *args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops.clear()
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the sinks and routes."""

    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def ping(self):
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def pipeline(self):
        return FakePipeline(self)

    def _ascending(self, key):
        return sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])

    async def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    async def zremrangebyrank(self, key, start, end):
        items = self._ascending(key)
        n = len(items)
        if end < 0:
            end += n
        if start < 0:
            start += n
        doomed = items[start:end + 1] if end >= start else []
        for member, _ in doomed:
            del self.zsets[key][member]
        return len(doomed)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def ttl(self, key):
        if key not in self.zsets:
            return -2
        return self.ttls.get(key, -1)

    async def zrevrange(self, key, start, end):
        items = list(reversed(self._ascending(key)))
        return [m for m, _ in items[start:end + 1]]

    async def zrevrangebyscore(self, key, max_score, min_score):
        items = reversed(self._ascending(key))
        return [m for m, s in items if min_score <= s <= max_score]

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def delete(self, key):
        existed = key in self.zsets
        self.zsets.pop(key, None)
        self.ttls.pop(key, None)
        return int(existed)

    async def aclose(self):
        self.closed = True


class HungPipeline(FakePipeline):
    async def execute(self):
        await asyncio.sleep(3600)


class HungRedis(FakeRedis):
    """Accepts connections but never answers a pipeline."""

    def pipeline(self):
        return HungPipeline(self)


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.readings: list[CanonicalReading] = []
        self.fail = fail

    async def __call__(self, reading: CanonicalReading) -> None:
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.readings.append(reading)


class RecordingDeadLetters:
    def __init__(self) -> None:
        self.letters: list[dict] = []

    async def send(self, topic, payload, error_category, error_message, greenhouse_id=None):
        self.letters.append({
            "topic": topic,
            "payload": payload,
            "category": error_category,
            "message": error_message,
            "greenhouse_id": greenhouse_id,
        })

    @property
    def count(self):
        return len(self.letters)


def make_reading(
    seconds: float = 0,
    tenant_id: str = "T1",
    greenhouse_id: str = "001",
    **channels,
) -> CanonicalReading:
    channels = channels or {"sensor_01": 21.5, "sensor_02": 60.0}
    return CanonicalReading(
        timestamp=datetime.fromtimestamp(1_700_000_000 + seconds, tz=timezone.utc),
        source=SourceKind.MQTT_GREENHOUSE,
        greenhouse_id=greenhouse_id,
        tenant_id=tenant_id,
        **channels,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def open_limiter():
    return RateLimiter(min_interval=5.0, enabled=False)
