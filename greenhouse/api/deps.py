"""
Greenhouse API — Shared Dependencies

FastAPI dependency injection for the pipeline components owned by the
application lifespan, and the tenant context header.
"""

from fastapi import Header, HTTPException, Request

from ..ingestion.cache import MessageCache
from ..ingestion.ingestor import MQTTIngestor
from ..ingestion.rate_limiter import RateLimiter
from ..simulation.service import InvalidTenantError, SimulationService, validate_tenant_id


def get_simulation_service(request: Request) -> SimulationService:
    return request.app.state.simulation


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_message_cache(request: Request) -> MessageCache:
    return request.app.state.message_cache


# ── Tenant context ───────────────────────────────────────────────────────
# Resolved from the X-Tenant-ID header until real auth resolves it from the
# caller's token.

async def get_tenant_id(
    x_tenant_id: str = Header("DEMO", alias="X-Tenant-ID"),
) -> str:
    try:
        return validate_tenant_id(x_tenant_id)
    except InvalidTenantError as e:
        raise HTTPException(400, str(e))


def get_ingestor(request: Request) -> MQTTIngestor:
    ingestor = getattr(request.app.state, "ingestor", None)
    if ingestor is None or not ingestor.connected:
        raise HTTPException(503, "MQTT broker connection not available")
    return ingestor
