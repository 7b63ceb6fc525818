"""
Greenhouse Platform — Simulation control surface

What the HTTP layer calls: start / stop / status for a tenant, plus a manual
single tick for debugging.  Tenant ids are validated here, before anything
reaches the registry.
"""

import logging
import re

from .registry import SimulationRegistry, SimulationRun, SimulationStatus
from .scheduler import TickScheduler

logger = logging.getLogger("greenhouse.simulation")

# Plain codes ("DEMO") and UUIDs both qualify
TENANT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}")


class InvalidTenantError(ValueError):
    """Tenant identifier is empty or malformed."""


def validate_tenant_id(tenant_id: object) -> str:
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.fullmatch(tenant_id):
        raise InvalidTenantError(
            f"Invalid tenant id {tenant_id!r}: expected 1-64 characters "
            "from [A-Za-z0-9_.:-], starting with a letter or digit"
        )
    return tenant_id


class SimulationService:

    def __init__(self, registry: SimulationRegistry, scheduler: TickScheduler) -> None:
        self.registry = registry
        self.scheduler = scheduler

    def start_simulation(self, tenant_id: str) -> SimulationRun:
        return self.registry.start(validate_tenant_id(tenant_id))

    def stop_simulation(self, tenant_id: str) -> bool:
        return self.registry.stop(validate_tenant_id(tenant_id))

    def get_status(self, tenant_id: str) -> SimulationStatus:
        return self.registry.status(validate_tenant_id(tenant_id))

    async def trigger_single_tick(self) -> int:
        """Run the tick logic once, now, for every active tenant."""
        processed = await self.scheduler.tick()
        logger.info("Manual simulation tick executed — %d tenants processed", processed)
        return processed
