"""
Greenhouse Platform — Dead Letter Queue

Rejected greenhouse messages are parked in greenhouse_dead_letters so an
operator can see what a misbehaving device actually sent.

Categories:
  - PARSE_ERROR:    malformed JSON, non-object payload, bad timestamp
  - TOPIC_ERROR:    topic doesn't match a known greenhouse pattern
  - INTERNAL_ERROR: unexpected exception during processing

Without an engine the queue only counts and logs (tests, local runs).
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import settings

logger = logging.getLogger("greenhouse.dlq")

CATEGORIES = ("PARSE_ERROR", "TOPIC_ERROR", "INTERNAL_ERROR")

MAX_PAYLOAD_CHARS = 4000
MAX_ERROR_CHARS = 1000

_INSERT = text("""
    INSERT INTO greenhouse_dead_letters
        (received_at, source, greenhouse_id, raw_payload, error_category, error_message)
    VALUES
        (:received_at, :source, :greenhouse_id, :payload, :category, :message)
""")


class DeadLetterQueue:

    def __init__(
        self,
        engine: Optional[AsyncEngine] = None,
        enabled: bool = settings.DLQ_ENABLED,
        timeout: float = settings.DLQ_WRITE_TIMEOUT_S,
    ) -> None:
        self._engine = engine
        self.enabled = enabled
        self.timeout = timeout
        self.by_category: Counter = Counter()
        self.write_errors = 0

    async def send(
        self,
        topic: str,
        payload: Optional[str],
        error_category: str,
        error_message: str,
        greenhouse_id: Optional[str] = None,
    ) -> None:
        """Record one rejected message.  Storage failures are logged and counted, never raised."""
        if not self.enabled:
            return
        if error_category not in CATEGORIES:
            error_category = "INTERNAL_ERROR"

        self.by_category[error_category] += 1
        logger.info("Dead letter %s from %s: %s", error_category, topic, error_message)

        if self._engine is None:
            return
        row = {
            "received_at": datetime.now(timezone.utc),
            "source": topic,
            "greenhouse_id": greenhouse_id,
            "payload": payload[:MAX_PAYLOAD_CHARS] if payload else None,
            "category": error_category,
            "message": error_message[:MAX_ERROR_CHARS],
        }
        try:
            await asyncio.wait_for(self._write(row), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.write_errors += 1
            logger.error("Dead letter write timed out after %.1fs (source=%s)", self.timeout, topic)
        except Exception:
            self.write_errors += 1
            logger.exception("Failed to store dead letter (source=%s)", topic)

    async def _write(self, row: dict) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(_INSERT, row)

    @property
    def count(self) -> int:
        return sum(self.by_category.values())
