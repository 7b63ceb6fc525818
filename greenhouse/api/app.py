"""
Greenhouse Platform — REST API + WebSocket

FastAPI application that owns the whole greenhouse pipeline: the MQTT
ingestor, the per-tenant demo simulation and the sinks both feed.

Usage:
    uvicorn greenhouse.api.app:app --host 0.0.0.0 --port 8000

Endpoints:
  POST /api/v1/simulation/start          (X-Tenant-ID header, default DEMO)
  POST /api/v1/simulation/stop
  GET  /api/v1/simulation/status
  POST /api/v1/simulation/generate
  GET  /api/v1/rate-limiter/stats
  POST /api/v1/rate-limiter/reset-stats
  GET  /api/v1/greenhouse/messages/recent?limit=N
  GET  /api/v1/greenhouse/messages/latest
  GET  /api/v1/greenhouse/messages/range?start=T1&end=T2
  GET  /api/v1/greenhouse/cache/stats
  POST /api/v1/mqtt/publish?topic=T&qos=Q
  POST /api/v1/mqtt/publish/custom
  POST /api/v1/mqtt/publish/raw
  GET  /health
  GET  /stats
  WS   /api/v1/ws/greenhouse?tenant_id=X&greenhouse_id=Y

Architecture:
  MQTT broker ──→ MQTTIngestor ──┐
                                 ├──→ MessageProcessor ──→ RateLimiter
  TickScheduler (1s, per tenant)─┘            │
                                 ┌────────────┼────────────┐
                                 ▼            ▼            ▼
                            BatchWriter  Broadcaster  MessageCache
                            (Timescale)  (Redis pub)  (Redis ZSET)
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import create_async_engine
import redis.asyncio as aioredis

from ..ingestion.batch_writer import BatchWriter
from ..ingestion.broadcaster import Broadcaster
from ..ingestion.cache import MessageCache
from ..ingestion.config import settings
from ..ingestion.dead_letter import DeadLetterQueue
from ..ingestion.ingestor import MQTTIngestor
from ..ingestion.metrics import report_metrics, start_metrics_server
from ..ingestion.processor import MessageProcessor
from ..ingestion.rate_limiter import RateLimiter
from ..simulation.registry import SimulationRegistry
from ..simulation.scheduler import TickScheduler
from ..simulation.service import SimulationService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger("greenhouse.api")

VERSION = "0.1.0"


def collect_stats(state) -> dict:
    """Flatten every component's counters into the metrics snapshot."""
    processor = state.processor.snapshot()
    limiter = state.rate_limiter.get_stats()
    writer = state.writer.stats
    mqtt = state.ingestor.stats if state.ingestor is not None else {}
    return {
        "readings_received": processor["received"],
        "readings_accepted": processor["accepted"],
        "parse_errors": processor["parse_errors"],
        "readings_empty": processor["empty"],
        "sink_errors": sum(processor["sink_errors"].values()),
        "rl_received": limiter.total_received,
        "rl_saved": limiter.total_saved,
        "rl_dropped": limiter.total_dropped,
        "rl_drop_rate": limiter.drop_rate_percent,
        "rows_written": writer.rows_written,
        "rows_dropped": writer.rows_dropped,
        "flush_errors": writer.flush_errors,
        "last_flush_ms": writer.last_flush_ms,
        "buffer_size": state.writer.pending,
        "mqtt_received": mqtt.get("received", 0),
        "mqtt_invalid_topics": mqtt.get("invalid_topics", 0),
        "mqtt_echo_errors": mqtt.get("echo_errors", 0),
        "dlq_count": state.dead_letter.count,
        "simulations_active": state.registry.active_count,
        "simulation_ticks": state.scheduler.ticks,
        "simulation_tenant_failures": state.scheduler.tenant_failures,
        "simulation_skipped_ticks": state.scheduler.skipped_ticks,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — DB pool, Redis, sinks, producers, metrics."""
    logger.info("Greenhouse API starting...")
    state = app.state

    # Database
    engine = create_async_engine(
        settings.database_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=300,
    )
    state.db_engine = engine

    # Redis (broadcast, message cache, WebSocket pub/sub)
    state.redis = aioredis.from_url(
        settings.REDIS_URL, decode_responses=True, socket_connect_timeout=5
    )

    # Sinks
    state.writer = BatchWriter(engine)
    state.broadcaster = Broadcaster(state.redis)
    state.message_cache = MessageCache(state.redis)
    state.dead_letter = DeadLetterQueue(engine)
    await state.writer.start()
    await state.broadcaster.connect()
    await state.message_cache.connect()

    # Pipeline
    state.rate_limiter = RateLimiter()
    state.processor = MessageProcessor(
        state.rate_limiter,
        store=state.writer.save,
        live=state.broadcaster.publish,
        cache=state.message_cache.store,
        dead_letter=state.dead_letter,
    )

    # Producers
    state.registry = SimulationRegistry()
    state.scheduler = TickScheduler(state.registry, state.processor)
    state.simulation = SimulationService(state.registry, state.scheduler)
    if settings.SIMULATION_SCHEDULER_ENABLED:
        await state.scheduler.start()

    state.ingestor = None
    if settings.MQTT_ENABLED:
        state.ingestor = MQTTIngestor(state.processor, dead_letter=state.dead_letter)
        await state.ingestor.start()

    # Metrics
    state.collect_stats = lambda: collect_stats(state)
    metrics_runner = await start_metrics_server(settings.METRICS_PORT)
    metrics_task = asyncio.create_task(report_metrics(state.collect_stats))

    logger.info(
        "Greenhouse API ready — scheduler=%s mqtt=%s rate_limit=%s",
        settings.SIMULATION_SCHEDULER_ENABLED,
        settings.MQTT_ENABLED,
        settings.RATE_LIMIT_ENABLED,
    )
    yield

    # Shutdown — producers first so nothing lands in a closed sink
    metrics_task.cancel()
    await metrics_runner.cleanup()
    if state.ingestor is not None:
        await state.ingestor.stop()
    await state.scheduler.stop()
    state.registry.clear()
    await state.writer.stop()
    await state.message_cache.close()
    await state.broadcaster.close()
    await state.redis.aclose()
    await engine.dispose()
    logger.info("Greenhouse API stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Greenhouse Platform API",
        description=(
            "Greenhouse telemetry ingestion, live message feed and the "
            "per-tenant demo storm simulation."
        ),
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS — dashboard and mobile app
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .routes import health, messages, mqtt, rate_limiter, simulation, websockets
    app.include_router(simulation.router, prefix="/api/v1", tags=["Simulation"])
    app.include_router(rate_limiter.router, prefix="/api/v1", tags=["Rate limiter"])
    app.include_router(messages.router, prefix="/api/v1", tags=["Greenhouse messages"])
    app.include_router(mqtt.router, prefix="/api/v1", tags=["MQTT"])
    app.include_router(health.router, tags=["Health"])
    app.include_router(websockets.router, prefix="/api/v1", tags=["WebSocket"])

    return app


app = create_app()
