"""GET /health, GET /stats"""

import time

from fastapi import APIRouter, Request
from sqlalchemy import text

from ..schemas import HealthResponse

router = APIRouter()

_start_time = time.monotonic()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check — verifies DB and Redis connectivity and the tick loop."""
    state = request.app.state
    db_ok = False
    redis_ok = False

    engine = getattr(state, "db_engine", None)
    if engine is not None:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_ok = True
        except Exception:
            db_ok = False

    redis = getattr(state, "redis", None)
    if redis is not None:
        try:
            await redis.ping()
            redis_ok = True
        except Exception:
            redis_ok = False

    scheduler = getattr(state, "scheduler", None)
    registry = getattr(state, "registry", None)

    return HealthResponse(
        status="ok" if (db_ok and redis_ok) else "degraded",
        version=request.app.version,
        db_connected=db_ok,
        redis_connected=redis_ok,
        simulation_scheduler_running=bool(scheduler and scheduler.running),
        active_simulations=registry.active_count if registry is not None else 0,
        uptime_seconds=round(time.monotonic() - _start_time, 1),
    )


@router.get("/stats")
async def pipeline_stats(request: Request):
    """Pipeline counters — processor, rate limiter, writer, MQTT and simulation."""
    return request.app.state.collect_stats()
