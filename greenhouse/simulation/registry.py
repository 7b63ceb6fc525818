"""
Greenhouse Platform — Simulation Registry

tenant_id → simulation start time (epoch millis).  This is the only mutable
state the simulation shares between the REST handlers (start/stop/status) and
the tick loop.

Starting an already running tenant restarts its clock (last write wins).
Runs never expire on their own: a simulation that is never stopped keeps
ticking, sitting in NORMALIZATION once the scenario has played out.

Entries are spread over shards, each with its own lock, so a start/stop for
one tenant never blocks ticks for the others.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .phases import phase_for_minute

logger = logging.getLogger("greenhouse.simulation.registry")

_SHARD_COUNT = 16


@dataclass(frozen=True, slots=True)
class SimulationRun:
    tenant_id: str
    started_at_ms: int


@dataclass(frozen=True)
class SimulationStatus:
    is_active: bool
    elapsed_seconds: int = 0
    phase: str = ""
    description: str = ""


class SimulationRegistry:
    """Thread-safe sharded map of active simulation runs."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._shards: list[tuple[threading.Lock, dict[str, int]]] = [
            (threading.Lock(), {}) for _ in range(_SHARD_COUNT)
        ]

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _shard(self, tenant_id: str) -> tuple[threading.Lock, dict[str, int]]:
        return self._shards[hash(tenant_id) % _SHARD_COUNT]

    def start(self, tenant_id: str) -> SimulationRun:
        run = SimulationRun(tenant_id, self._now_ms())
        lock, runs = self._shard(tenant_id)
        with lock:
            restarted = tenant_id in runs
            runs[tenant_id] = run.started_at_ms
        logger.info(
            "%s simulation for tenant %s",
            "Restarted" if restarted else "Started", tenant_id,
        )
        return run

    def stop(self, tenant_id: str) -> bool:
        """Remove the run.  Returns False if the tenant had none."""
        lock, runs = self._shard(tenant_id)
        with lock:
            removed = runs.pop(tenant_id, None) is not None
        if removed:
            logger.info("Stopped simulation for tenant %s", tenant_id)
        return removed

    def get(self, tenant_id: str) -> Optional[SimulationRun]:
        lock, runs = self._shard(tenant_id)
        with lock:
            started = runs.get(tenant_id)
        return SimulationRun(tenant_id, started) if started is not None else None

    def elapsed_seconds(self, run: SimulationRun) -> int:
        return max(0, (self._now_ms() - run.started_at_ms) // 1000)

    def status(self, tenant_id: str) -> SimulationStatus:
        run = self.get(tenant_id)
        if run is None:
            return SimulationStatus(is_active=False)
        elapsed = self.elapsed_seconds(run)
        phase = phase_for_minute(elapsed // 60)
        return SimulationStatus(
            is_active=True,
            elapsed_seconds=elapsed,
            phase=phase.name,
            description=phase.description,
        )

    def snapshot(self) -> list[SimulationRun]:
        """Copy of all runs; each shard is locked only while it is copied."""
        runs = []
        for lock, shard in self._shards:
            with lock:
                items = list(shard.items())
            runs.extend(SimulationRun(t, s) for t, s in items)
        return runs

    def for_each_active(self, fn: Callable[[str, int], None]) -> None:
        for run in self.snapshot():
            fn(run.tenant_id, run.started_at_ms)

    @property
    def active_count(self) -> int:
        total = 0
        for lock, shard in self._shards:
            with lock:
                total += len(shard)
        return total

    def clear(self) -> None:
        for lock, shard in self._shards:
            with lock:
                shard.clear()
