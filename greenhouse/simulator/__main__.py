"""
Greenhouse Platform — Device Simulator

Publishes realistic greenhouse payloads over MQTT so the real device path
(broker → MQTTIngestor → MessageProcessor) can be exercised end to end without
hardware.  Unlike the per-tenant demo simulation, nothing here follows a
scenario: values are steady-state with Gaussian noise.

Usage:
    python -m greenhouse.simulator
    # or via docker compose

Each cycle publishes, per greenhouse:
  - GREENHOUSE                               {"SENSOR_01", "SENSOR_02", "SETPOINT_01..03"}
    (or greenhouse/{id}/data when GREENHOUSE_COUNT > 1)
  - greenhouse/{id}/actuators/status         extractor fan state
"""

import asyncio
import json
import os
import random
import time
from datetime import datetime, timezone
from typing import Optional

import aiomqtt

# ── Configuration ────────────────────────────────────────────────────────
MQTT_BROKER = os.getenv("MQTT_BROKER", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
GREENHOUSE_COUNT = int(os.getenv("GREENHOUSE_COUNT", "1"))
POLL_INTERVAL_MS = int(os.getenv("POLL_INTERVAL_MS", "5000"))
EXTRACTOR_ON_PROBABILITY = float(os.getenv("EXTRACTOR_ON_PROBABILITY", "0.3"))

TEMPERATURE_RANGE = (15.0, 35.0)   # °C
HUMIDITY_RANGE = (30.0, 90.0)      # %
SETPOINT_RANGE = (30.0, 70.0)      # sector opening, %


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    lo, hi = bounds
    return max(lo, min(hi, value))


def generate_temperature(rng: random.Random, base: float = 24.0, variation: float = 4.0) -> float:
    return round(_clamp(base + rng.gauss(0, variation / 2), TEMPERATURE_RANGE), 2)


def generate_humidity(rng: random.Random, base: float = 65.0, variation: float = 15.0) -> float:
    return round(_clamp(base + rng.gauss(0, variation / 2), HUMIDITY_RANGE), 2)


def generate_setpoint(rng: random.Random) -> float:
    """Mostly a modulated opening around 50%; sometimes fully closed or fully open."""
    if rng.random() < 0.7:
        return round(_clamp(50.0 + rng.gauss(0, 15.0), SETPOINT_RANGE), 2)
    return 0.0 if rng.random() < 0.5 else 100.0


def generate_payload(rng: random.Random, timestamp: Optional[datetime] = None) -> dict:
    """One multi-channel greenhouse message."""
    payload = {
        "SENSOR_01": generate_temperature(rng),
        "SENSOR_02": generate_humidity(rng),
        "SETPOINT_01": generate_setpoint(rng),
        "SETPOINT_02": generate_setpoint(rng),
        "SETPOINT_03": generate_setpoint(rng),
    }
    if timestamp is not None:
        payload["timestamp"] = timestamp.isoformat()
    return payload


def generate_extractor_status(rng: random.Random, greenhouse_id: str) -> dict:
    on = rng.random() < EXTRACTOR_ON_PROBABILITY
    return {
        "actuator_id": f"EXTRACTOR-{greenhouse_id}",
        "state": "ON" if on else "OFF",
        "value": 1.0 if on else 0.0,
    }


def greenhouse_topic(greenhouse_id: str, greenhouse_count: int = GREENHOUSE_COUNT) -> str:
    """A single greenhouse uses the legacy GREENHOUSE topic, several use per-id topics."""
    if greenhouse_count == 1:
        return "GREENHOUSE"
    return f"greenhouse/{greenhouse_id}/data"


async def run_simulator(rng: Optional[random.Random] = None):
    """Main simulator loop — publishes telemetry for all greenhouses."""
    rng = rng or random.Random()
    greenhouse_ids = [f"{i:03d}" for i in range(1, GREENHOUSE_COUNT + 1)]
    per_cycle = len(greenhouse_ids) * 2
    print(f"Simulator: {len(greenhouse_ids)} greenhouse(s), {per_cycle} messages per cycle")
    print(f"Poll interval: {POLL_INTERVAL_MS}ms → {per_cycle * 1000 / POLL_INTERVAL_MS:.1f} msg/sec")

    start_time = time.monotonic()

    async with aiomqtt.Client(
        hostname=MQTT_BROKER,
        port=MQTT_PORT,
        identifier="greenhouse-simulator",
    ) as client:
        print(f"Connected to {MQTT_BROKER}:{MQTT_PORT}")

        cycle = 0
        while True:
            now = datetime.now(timezone.utc)
            for greenhouse_id in greenhouse_ids:
                await client.publish(
                    greenhouse_topic(greenhouse_id),
                    json.dumps(generate_payload(rng, now)),
                    qos=0,
                )
                await client.publish(
                    f"greenhouse/{greenhouse_id}/actuators/status",
                    json.dumps(generate_extractor_status(rng, greenhouse_id)),
                    qos=0,
                )

            cycle += 1
            if cycle % 10 == 0:
                elapsed = time.monotonic() - start_time
                print(f"Cycle {cycle}: {cycle * per_cycle / elapsed:.1f} msg/sec average, elapsed {elapsed:.0f}s")

            await asyncio.sleep(POLL_INTERVAL_MS / 1000)


if __name__ == "__main__":
    asyncio.run(run_simulator())
