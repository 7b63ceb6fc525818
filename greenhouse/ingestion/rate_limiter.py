"""
Greenhouse Platform — Reading Rate Limiter

Throttles readings per stream key (tenant:greenhouse:channel) so a chatty
device or a fast simulation tick cannot flood TimescaleDB.  A reading is
admitted when no earlier reading was accepted for its key, or when at least
`min_interval` seconds have passed since the last accepted one.  Rejected
readings do not move the last-accepted timestamp.

Counters (received / saved / dropped) are process-wide and only reset by an
explicit admin call; per-key state survives a stats reset.

The key map is split into shards, each guarded by its own lock, so admits for
unrelated devices never contend on a single mutex.  Each shard holds at most
its share of max_keys: idle keys go first, then the least recently accepted.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from .config import settings

logger = logging.getLogger("greenhouse.rate_limiter")

_SHARD_COUNT = 16


@dataclass
class RateLimiterStats:
    enabled: bool
    min_interval_seconds: float
    total_received: int
    total_saved: int
    total_dropped: int
    drop_rate_percent: float
    tracked_keys: int


class _Shard:
    __slots__ = ("lock", "last_accepted")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.last_accepted: dict[str, float] = {}


class RateLimiter:
    """Per-key minimum-interval gate with accept/drop counters."""

    def __init__(
        self,
        min_interval: float = settings.RATE_LIMIT_MIN_INTERVAL_SECONDS,
        enabled: bool = settings.RATE_LIMIT_ENABLED,
        max_keys: int = settings.RATE_LIMIT_MAX_KEYS,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = float(min_interval)
        self.enabled = enabled
        self.max_keys = max_keys
        self._shard_cap = max_keys // _SHARD_COUNT + 1
        self._shards = [_Shard() for _ in range(_SHARD_COUNT)]
        self._stats_lock = threading.Lock()
        self._received = 0
        self._saved = 0
        self._dropped = 0

        if enabled:
            logger.warning(
                "Rate limiter ENABLED — min interval %.1fs per stream; "
                "excess readings are neither stored nor broadcast",
                self.min_interval,
            )
        else:
            logger.info("Rate limiter disabled — every reading is admitted")

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % _SHARD_COUNT]

    def admit(self, key: str, timestamp: Union[float, datetime]) -> bool:
        """
        Decide whether a reading for `key` at `timestamp` (epoch seconds or
        datetime) may pass.  Always counts the call as received.
        """
        ts = timestamp.timestamp() if isinstance(timestamp, datetime) else float(timestamp)

        if not self.enabled:
            self._count(admitted=True)
            return True

        shard = self._shard(key)
        with shard.lock:
            last = shard.last_accepted.get(key)
            if last is not None and ts - last < self.min_interval:
                admitted = False
            else:
                shard.last_accepted[key] = ts
                admitted = True
                if len(shard.last_accepted) > self._shard_cap:
                    self._evict(shard, ts)

        self._count(admitted)
        if not admitted:
            logger.debug(
                "Rate limited: key=%s elapsed=%.2fs < min=%.1fs",
                key, ts - last, self.min_interval,
            )
        return admitted

    def _count(self, admitted: bool) -> None:
        with self._stats_lock:
            self._received += 1
            if admitted:
                self._saved += 1
            else:
                self._dropped += 1

    def _evict(self, shard: _Shard, now: float) -> None:
        """
        Drop keys idle for more than twice the interval, then the least
        recently accepted ones until the shard is back under its share of
        max_keys (caller holds shard.lock).
        """
        threshold = now - self.min_interval * 2
        stale = [k for k, t in shard.last_accepted.items() if t < threshold]
        for k in stale:
            del shard.last_accepted[k]

        excess = len(shard.last_accepted) - self._shard_cap
        if excess > 0:
            oldest = sorted(shard.last_accepted, key=shard.last_accepted.__getitem__)[:excess]
            for k in oldest:
                del shard.last_accepted[k]
            logger.warning(
                "Rate limiter over capacity: evicted %d active keys (max_keys=%d)",
                excess, self.max_keys,
            )
        if stale:
            logger.debug("Rate limiter cleanup: evicted %d stale keys", len(stale))

    def last_accepted(self, key: str) -> Optional[float]:
        shard = self._shard(key)
        with shard.lock:
            return shard.last_accepted.get(key)

    @property
    def tracked_keys(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.last_accepted)
        return total

    def get_stats(self) -> RateLimiterStats:
        with self._stats_lock:
            received, saved, dropped = self._received, self._saved, self._dropped
        drop_rate = (dropped / received * 100) if received > 0 else 0.0
        return RateLimiterStats(
            enabled=self.enabled,
            min_interval_seconds=self.min_interval,
            total_received=received,
            total_saved=saved,
            total_dropped=dropped,
            drop_rate_percent=round(drop_rate, 2),
            tracked_keys=self.tracked_keys,
        )

    def reset_stats(self) -> None:
        """Zero the counters.  Per-key last-accepted state is kept."""
        with self._stats_lock:
            self._received = 0
            self._saved = 0
            self._dropped = 0
        logger.info("Rate limiter statistics reset")
