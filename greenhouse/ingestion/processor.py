"""
Greenhouse Platform — Message Processor

The single ingestion entry point.  Real MQTT listeners and the simulation
scheduler both call `process_reading`, so simulated data gets exactly the same
downstream treatment as device data: parsing, rate limiting, persistence,
live broadcast and caching.

Pipeline:
  payload ──→ parse_reading ──── malformed? ──→ log + dead letter, drop
                  │
                  ▼
             RateLimiter ──────── too soon? ──→ counted, drop
             (arrival time, not the device clock)
                  │
                  ▼
        ┌─────────┼──────────┐
        ▼         ▼          ▼
   BatchWriter Broadcaster MessageCache      (each sink isolated)

process_reading never raises: it runs inside the MQTT consumer loop and the
simulation tick, and neither may die because of one bad message.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from .dead_letter import DeadLetterQueue
from .rate_limiter import RateLimiter
from .readings import CanonicalReading, PayloadError, SourceKind, parse_reading, with_origin

logger = logging.getLogger("greenhouse.processor")

Payload = Union[str, bytes, Mapping[str, Any], CanonicalReading]
Sink = Callable[[CanonicalReading], Awaitable[Any]]


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    RATE_LIMITED = "rate_limited"
    EMPTY = "empty"
    MALFORMED = "malformed"


@dataclass
class ProcessorStats:
    received: int = 0
    accepted: int = 0
    rate_limited: int = 0
    parse_errors: int = 0
    empty: int = 0
    sink_errors: dict[str, int] = field(default_factory=dict)


class MessageProcessor:
    """Normalises payloads and fans accepted readings out to the sinks."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        store: Optional[Sink] = None,
        live: Optional[Sink] = None,
        cache: Optional[Sink] = None,
        dead_letter: Optional[DeadLetterQueue] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rate_limiter = rate_limiter
        self._clock = clock
        self._sinks: list[tuple[str, Sink]] = [
            (name, sink)
            for name, sink in (("persistence", store), ("live", live), ("cache", cache))
            if sink is not None
        ]
        self._dlq = dead_letter
        self._lock = threading.Lock()
        self.stats = ProcessorStats()

    def _bump(self, counter: str) -> None:
        with self._lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)

    async def process_reading(
        self,
        payload: Payload,
        origin: Optional[str],
        source_kind: SourceKind,
        *,
        tenant_id: Optional[str] = None,
        channel: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> bool:
        """
        Process one message from any producer.

        `origin` is the greenhouse id the message belongs to.  Returns True
        when the reading was accepted and dispatched to the sinks.
        """
        outcome = await self.submit(
            payload, origin, source_kind, tenant_id=tenant_id, channel=channel, topic=topic,
        )
        return outcome is Outcome.ACCEPTED

    async def submit(
        self,
        payload: Payload,
        origin: Optional[str],
        source_kind: SourceKind,
        *,
        tenant_id: Optional[str] = None,
        channel: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> Outcome:
        """Like process_reading, but reports why a message was not dispatched."""
        self._bump("received")

        try:
            if isinstance(payload, CanonicalReading):
                reading = with_origin(payload, origin, tenant_id)
            else:
                reading = parse_reading(
                    payload,
                    source_kind,
                    greenhouse_id=origin,
                    tenant_id=tenant_id,
                    channel=channel,
                )
        except PayloadError as e:
            self._bump("parse_errors")
            logger.warning(
                "Dropping malformed %s payload (greenhouse=%s): %s",
                source_kind.value, origin, e,
            )
            await self._dead_letter(payload, source_kind, origin, topic, "PARSE_ERROR", str(e))
            return Outcome.MALFORMED
        except Exception as e:
            self._bump("parse_errors")
            logger.exception("Unexpected error parsing %s payload", source_kind.value)
            await self._dead_letter(payload, source_kind, origin, topic, "INTERNAL_ERROR", repr(e))
            return Outcome.MALFORMED

        if reading.is_empty:
            self._bump("empty")
            logger.debug("No known channels in %s payload — ignored", source_kind.value)
            return Outcome.EMPTY

        # Gate on arrival time; the payload timestamp is only persisted
        if not self.rate_limiter.admit(reading.rate_key, self._clock()):
            self._bump("rate_limited")
            return Outcome.RATE_LIMITED

        self._bump("accepted")
        await self._dispatch(reading)
        return Outcome.ACCEPTED

    async def _dispatch(self, reading: CanonicalReading) -> None:
        """Run every sink concurrently; a failing sink only loses its own copy."""
        if not self._sinks:
            return
        results = await asyncio.gather(
            *(sink(reading) for _, sink in self._sinks),
            return_exceptions=True,
        )
        for (name, _), result in zip(self._sinks, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                with self._lock:
                    self.stats.sink_errors[name] = self.stats.sink_errors.get(name, 0) + 1
                logger.error(
                    "Sink '%s' failed for greenhouse=%s tenant=%s: %r",
                    name, reading.greenhouse_id, reading.tenant_id, result,
                    exc_info=result,
                )

    async def _dead_letter(
        self,
        payload: Payload,
        source_kind: SourceKind,
        origin: Optional[str],
        topic: Optional[str],
        category: str,
        message: str,
    ) -> None:
        if self._dlq is None:
            return
        if isinstance(payload, bytes):
            raw = payload.decode("utf-8", errors="replace")
        else:
            raw = str(payload)
        await self._dlq.send(
            topic=topic or f"{source_kind.value}:{origin or '-'}",
            payload=raw,
            error_category=category,
            error_message=message,
            greenhouse_id=origin,
        )

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "received": self.stats.received,
                "accepted": self.stats.accepted,
                "rate_limited": self.stats.rate_limited,
                "parse_errors": self.stats.parse_errors,
                "empty": self.stats.empty,
                "sink_errors": dict(self.stats.sink_errors),
            }
