"""
Greenhouse Platform — Batch Writer (persistence adapter)

Accumulates sensor reading rows in memory and flushes them to TimescaleDB in
bulk using a single multi-row INSERT built from unnest() arrays.

Flush triggers:
  1. Batch reaches BATCH_SIZE rows
  2. Timer hits BATCH_FLUSH_INTERVAL seconds
  3. Graceful shutdown signal

Backpressure: if pending rows exceed BATCH_MAX_PENDING, new rows are dropped
and counted as overflow.  The simulation tick and the MQTT consumer only ever
append to the buffer, so a slow database never stalls them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import settings
from .readings import CHANNELS, CanonicalReading

logger = logging.getLogger("greenhouse.writer")


@dataclass(slots=True)
class SensorReadingRow:
    """Single reading point ready for DB insertion."""
    time: datetime
    sensor_id: str          # channel code or actuator id
    greenhouse_id: Optional[str]
    tenant_id: Optional[str]
    sensor_type: str        # SENSOR, SETPOINT, ACTUATOR
    value: float
    unit: Optional[str]


def rows_from_reading(reading: CanonicalReading) -> list[SensorReadingRow]:
    """One row per present channel, plus one for an actuator status with a value."""
    rows = []
    for code, value in reading.channel_values().items():
        _, sensor_type, unit = CHANNELS[code]
        rows.append(SensorReadingRow(
            time=reading.timestamp,
            sensor_id=code,
            greenhouse_id=reading.greenhouse_id,
            tenant_id=reading.tenant_id,
            sensor_type=sensor_type,
            value=value,
            unit=unit,
        ))
    if reading.actuator is not None and reading.actuator.value is not None:
        rows.append(SensorReadingRow(
            time=reading.timestamp,
            sensor_id=reading.actuator.actuator_id,
            greenhouse_id=reading.greenhouse_id,
            tenant_id=reading.tenant_id,
            sensor_type="ACTUATOR",
            value=reading.actuator.value,
            unit=reading.actuator.state,
        ))
    return rows


_INSERT = text("""
    INSERT INTO sensor_readings
        (time, sensor_id, greenhouse_id, tenant_id, sensor_type, value, unit)
    SELECT unnest(:times ::timestamptz[]),
           unnest(:sensor_ids ::varchar[]),
           unnest(:greenhouse_ids ::varchar[]),
           unnest(:tenant_ids ::varchar[]),
           unnest(:sensor_types ::varchar[]),
           unnest(:values ::double precision[]),
           unnest(:units ::varchar[])
""")

SLOW_FLUSH_MS = 500


def _columns(batch: list[SensorReadingRow]) -> dict[str, list]:
    """Row-major batch → one array per column, as the unnest() insert expects."""
    return {
        "times": [r.time for r in batch],
        "sensor_ids": [r.sensor_id for r in batch],
        "greenhouse_ids": [r.greenhouse_id for r in batch],
        "tenant_ids": [r.tenant_id for r in batch],
        "sensor_types": [r.sensor_type for r in batch],
        "values": [r.value for r in batch],
        "units": [r.unit for r in batch],
    }


@dataclass
class WriterStats:
    rows_written: int = 0
    rows_dropped: int = 0
    flushes: int = 0
    flush_errors: int = 0
    last_flush_ms: float = 0
    last_flush_rows: int = 0


class BatchWriter:
    """
    Buffered persistence sink.

    `save` is what the MessageProcessor calls; it only appends to the buffer.
    A background task drains the buffer every `flush_interval` seconds, or as
    soon as `batch_size` rows are waiting.
    """

    def __init__(
        self,
        engine: Optional[AsyncEngine] = None,
        batch_size: int = settings.BATCH_SIZE,
        flush_interval: float = settings.BATCH_FLUSH_INTERVAL,
        max_pending: int = settings.BATCH_MAX_PENDING,
    ) -> None:
        self._engine = engine
        self._owns_engine = engine is None
        self._buffer: list[SensorReadingRow] = []
        self._lock = asyncio.Lock()
        self._batch_ready = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_pending = max_pending
        self.stats = WriterStats()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._engine is None:
            self._engine = create_async_engine(
                settings.database_url,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_pre_ping=True,
                pool_recycle=300,
            )
        self._task = asyncio.create_task(self._drain(), name="batch-writer")
        logger.info(
            "Batch writer started — batch_size=%d, flush_interval=%.1fs, max_pending=%d",
            self.batch_size, self.flush_interval, self.max_pending,
        )

    async def stop(self) -> None:
        """Stop the drain task, then write whatever is still buffered."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._flush()

        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
        logger.info(
            "Batch writer stopped — %d rows written, %d dropped, %d still pending",
            self.stats.rows_written, self.stats.rows_dropped, self.pending,
        )

    # ── Producer side ────────────────────────────────────────────────────

    async def save(self, reading: CanonicalReading) -> bool:
        """
        Persistence sink entry point used by the message processor.
        Returns False if any row was dropped due to backpressure.
        """
        results = [await self.enqueue(row) for row in rows_from_reading(reading)]
        if not all(results):
            logger.warning(
                "Write buffer full (%d rows) — dropped %d row(s) for greenhouse=%s tenant=%s",
                self.max_pending, results.count(False), reading.greenhouse_id, reading.tenant_id,
            )
        return all(results)

    async def enqueue(self, row: SensorReadingRow) -> bool:
        async with self._lock:
            if len(self._buffer) >= self.max_pending:
                self.stats.rows_dropped += 1
                return False
            self._buffer.append(row)
            if len(self._buffer) >= self.batch_size:
                self._batch_ready.set()
        return True

    # ── Consumer side ────────────────────────────────────────────────────

    async def _drain(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._batch_ready.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._batch_ready.clear()
            await self._flush()

    async def _flush(self) -> None:
        batch = await self._take_batch()
        if not batch:
            return
        try:
            elapsed_ms = await self._write(batch)
        except Exception:
            self.stats.flush_errors += 1
            logger.exception("Flush failed — %d rows returned to buffer", len(batch))
            await self._requeue(batch)
            return

        self.stats.rows_written += len(batch)
        self.stats.flushes += 1
        self.stats.last_flush_ms = round(elapsed_ms, 2)
        self.stats.last_flush_rows = len(batch)
        if elapsed_ms > SLOW_FLUSH_MS:
            logger.warning("Slow flush: %d rows in %.0fms", len(batch), elapsed_ms)
        else:
            logger.debug("Flushed %d rows in %.1fms", len(batch), elapsed_ms)

    async def _take_batch(self) -> list[SensorReadingRow]:
        async with self._lock:
            if self._engine is None:
                return []
            batch, self._buffer = self._buffer, []
        return batch

    async def _write(self, batch: list[SensorReadingRow]) -> float:
        t0 = time.monotonic()
        async with self._engine.begin() as conn:
            await conn.execute(_INSERT, _columns(batch))
        return (time.monotonic() - t0) * 1000

    async def _requeue(self, batch: list[SensorReadingRow]) -> None:
        """Failed rows go back in front of newer ones; the oldest overflow is dropped."""
        async with self._lock:
            self._buffer = batch + self._buffer
            overflow = len(self._buffer) - self.max_pending
            if overflow > 0:
                self._buffer = self._buffer[overflow:]
                self.stats.rows_dropped += overflow
