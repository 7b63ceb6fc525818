"""
Greenhouse Platform — Simulation Tick Scheduler

Fixed-rate asyncio loop that drives every active tenant's simulation.  Each
tick, for each tenant in a registry snapshot:

    elapsed → phase → EnvironmentModel → CanonicalReading → MessageProcessor

Simulated readings enter the pipeline through the same
`MessageProcessor.process_reading` call the MQTT listener uses.

A failure for one tenant is logged and contained: the other tenants in the
same tick are still processed and the loop keeps running.  Tenants are
processed concurrently so one slow sink call does not delay the rest.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from ..ingestion.config import settings
from ..ingestion.processor import MessageProcessor
from ..ingestion.readings import SourceKind, from_simulation
from .environment import EnvironmentModel
from .registry import SimulationRegistry, SimulationRun

logger = logging.getLogger("greenhouse.simulation.scheduler")


class TickScheduler:
    """Periodic driver for all registered simulations."""

    def __init__(
        self,
        registry: SimulationRegistry,
        processor: MessageProcessor,
        model: Optional[EnvironmentModel] = None,
        interval_ms: int = settings.SIMULATION_TICK_INTERVAL_MS,
        greenhouse_id: str = settings.SIMULATION_GREENHOUSE_ID,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.registry = registry
        self.processor = processor
        self.model = model or EnvironmentModel()
        self.interval = interval_ms / 1000
        self.greenhouse_id = greenhouse_id
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0
        self.tenant_failures = 0
        self.skipped_ticks = 0

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="simulation-ticks")
        logger.info("Simulation scheduler started — tick every %.0fms", self.interval * 1000)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(
            "Simulation scheduler stopped — %d ticks, %d tenant failures",
            self.ticks, self.tenant_failures,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        """Fixed-rate loop; deadlines missed by an overrunning tick are skipped."""
        next_run = time.monotonic()
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Simulation tick failed")

            next_run += self.interval
            now = time.monotonic()
            if next_run < now:
                missed = int((now - next_run) // self.interval) + 1
                self.skipped_ticks += missed
                next_run += missed * self.interval
                logger.warning("Simulation tick overran — skipped %d deadline(s)", missed)
            await asyncio.sleep(next_run - now)

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self) -> int:
        """
        Run one simulation step for every active tenant.
        Returns the number of tenants processed without error.
        """
        runs = self.registry.snapshot()
        if not runs:
            return 0

        self.ticks += 1
        results = await asyncio.gather(*(self._process_tenant(run) for run in runs))
        return sum(results)

    async def _process_tenant(self, run: SimulationRun) -> bool:
        try:
            await self.process_simulation_step(run)
            return True
        except Exception:
            self.tenant_failures += 1
            logger.exception("Error in simulation tick for tenant %s", run.tenant_id)
            return False

    async def process_simulation_step(self, run: SimulationRun) -> None:
        now = self._clock()
        elapsed = max(0, (int(now * 1000) - run.started_at_ms) // 1000)
        simulated = self.model.simulate(elapsed)

        reading = from_simulation(
            temperature=simulated.temperature,
            humidity=simulated.humidity,
            tenant_id=run.tenant_id,
            greenhouse_id=self.greenhouse_id,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc),
        )

        if simulated.is_alert_condition:
            logger.warning(
                "ALERT tenant=%s phase=%s temperature=%.2f°C exceeds %.1f°C",
                run.tenant_id,
                simulated.phase.name,
                simulated.temperature,
                self.model.critical_temperature,
            )
        else:
            logger.debug(
                "Tick tenant=%s phase=%s t=%.2f h=%.2f",
                run.tenant_id, simulated.phase.name,
                simulated.temperature, simulated.humidity,
            )

        await self.processor.process_reading(
            reading,
            self.greenhouse_id,
            SourceKind.SIMULATED,
            tenant_id=run.tenant_id,
        )
