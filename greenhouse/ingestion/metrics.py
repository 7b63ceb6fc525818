"""
Greenhouse Platform — Metrics

Exposes a Prometheus-compatible /metrics endpoint for Grafana dashboards.
Runs on a separate port so it doesn't interfere with the API or ingestion.
"""

import asyncio
import logging
from typing import Callable

from aiohttp import web

from .config import settings

logger = logging.getLogger("greenhouse.metrics")

# Metrics state — refreshed periodically by the service lifespan
_metrics: dict = {}

# (exposition name, key in _metrics)
_SERIES = [
    # Pipeline
    ("greenhouse_readings_received_total", "readings_received"),
    ("greenhouse_readings_accepted_total", "readings_accepted"),
    ("greenhouse_readings_parse_errors_total", "parse_errors"),
    ("greenhouse_readings_empty_total", "readings_empty"),
    ("greenhouse_sink_errors_total", "sink_errors"),

    # Rate limiter
    ("greenhouse_rate_limiter_received_total", "rl_received"),
    ("greenhouse_rate_limiter_saved_total", "rl_saved"),
    ("greenhouse_rate_limiter_dropped_total", "rl_dropped"),
    ("greenhouse_rate_limiter_drop_rate_percent", "rl_drop_rate"),

    # Writer
    ("greenhouse_rows_written_total", "rows_written"),
    ("greenhouse_rows_dropped_total", "rows_dropped"),
    ("greenhouse_flush_errors_total", "flush_errors"),
    ("greenhouse_last_flush_ms", "last_flush_ms"),
    ("greenhouse_write_buffer_size", "buffer_size"),

    # MQTT
    ("greenhouse_mqtt_messages_received_total", "mqtt_received"),
    ("greenhouse_mqtt_invalid_topics_total", "mqtt_invalid_topics"),
    ("greenhouse_mqtt_echo_errors_total", "mqtt_echo_errors"),
    ("greenhouse_dead_letter_count_total", "dlq_count"),

    # Simulation
    ("greenhouse_simulations_active", "simulations_active"),
    ("greenhouse_simulation_ticks_total", "simulation_ticks"),
    ("greenhouse_simulation_tenant_failures_total", "simulation_tenant_failures"),
    ("greenhouse_simulation_skipped_ticks_total", "simulation_skipped_ticks"),
]


def update_metrics(data: dict) -> None:
    """Called periodically to refresh metric values."""
    _metrics.update(data)


def render_metrics(data: dict) -> str:
    """Prometheus text exposition format."""
    lines = [f"{name} {data.get(key, 0)}" for name, key in _SERIES]
    return "\n".join(lines) + "\n"


async def _handle_metrics(request: web.Request) -> web.Response:
    return web.Response(text=render_metrics(_metrics), content_type="text/plain")


async def _handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok", "metrics": _metrics})


async def start_metrics_server(port: int = settings.METRICS_PORT) -> web.AppRunner:
    """Start the metrics HTTP server on a background port."""
    app = web.Application()
    app.router.add_get("/metrics", _handle_metrics)
    app.router.add_get("/health", _handle_health)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info("Metrics server listening on :%d", port)
    return runner


async def report_metrics(collect: Callable[[], dict], interval: float = 5.0) -> None:
    """Push a fresh snapshot every `interval` seconds until cancelled."""
    while True:
        try:
            update_metrics(collect())
        except Exception:
            logger.exception("Metrics collection failed")
        await asyncio.sleep(interval)
