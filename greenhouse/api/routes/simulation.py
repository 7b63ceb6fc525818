"""
POST /simulation/start    — start (or restart) the 10-minute storm for the tenant
POST /simulation/stop     — stop it
GET  /simulation/status   — current phase and elapsed time
POST /simulation/generate — run one tick for all active tenants (debugging)
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ..deps import get_simulation_service, get_tenant_id
from ..schemas import SimulationActionResponse, SimulationStatusResponse, TickResponse
from ...simulation.service import SimulationService

router = APIRouter(prefix="/simulation")


@router.post("/start", response_model=SimulationActionResponse)
async def start_simulation(
    tenant_id: str = Depends(get_tenant_id),
    service: SimulationService = Depends(get_simulation_service),
):
    """Start the 10-minute demo simulation for the tenant.  Restarting resets the clock."""
    run = service.start_simulation(tenant_id)
    return SimulationActionResponse(
        tenant_id=tenant_id,
        message=f"Simulation started for tenant {tenant_id}. Phase: CALM",
        started_at=datetime.fromtimestamp(run.started_at_ms / 1000, tz=timezone.utc),
    )


@router.post("/stop", response_model=SimulationActionResponse)
async def stop_simulation(
    tenant_id: str = Depends(get_tenant_id),
    service: SimulationService = Depends(get_simulation_service),
):
    """Stop the tenant's simulation.  Stopping a simulation that isn't running is a no-op."""
    was_running = service.stop_simulation(tenant_id)
    message = (
        f"Simulation stopped for tenant {tenant_id}"
        if was_running
        else f"No simulation running for tenant {tenant_id}"
    )
    return SimulationActionResponse(tenant_id=tenant_id, message=message)


@router.get("/status", response_model=SimulationStatusResponse)
async def simulation_status(
    tenant_id: str = Depends(get_tenant_id),
    service: SimulationService = Depends(get_simulation_service),
):
    status = service.get_status(tenant_id)
    return SimulationStatusResponse(
        tenant_id=tenant_id,
        is_active=status.is_active,
        elapsed_seconds=status.elapsed_seconds,
        phase=status.phase,
        description=status.description,
    )


@router.post("/generate", response_model=TickResponse)
async def generate_single_step(
    service: SimulationService = Depends(get_simulation_service),
):
    """Manually trigger a single simulation tick.  Ticks every active tenant, not just the caller's."""
    processed = await service.trigger_single_tick()
    return TickResponse(tenants_processed=processed)
