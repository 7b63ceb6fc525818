import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from greenhouse.api.app import create_app
from greenhouse.api.routes.websockets import matches
from greenhouse.ingestion.cache import MessageCache
from greenhouse.ingestion.ingestor import MQTTIngestor
from greenhouse.ingestion.processor import MessageProcessor
from greenhouse.ingestion.rate_limiter import RateLimiter
from greenhouse.simulation.registry import SimulationRegistry
from greenhouse.simulation.scheduler import TickScheduler
from greenhouse.simulation.service import SimulationService

from conftest import RecordingSink, make_reading


@pytest.fixture
def app(clock, fake_redis):
    # No lifespan: wire the pipeline by hand against fakes
    app = create_app()
    state = app.state
    state.redis = fake_redis
    state.rate_limiter = RateLimiter(min_interval=5, enabled=True)
    state.sink = RecordingSink()
    state.processor = MessageProcessor(state.rate_limiter, live=state.sink)
    state.registry = SimulationRegistry(clock=clock)
    state.scheduler = TickScheduler(state.registry, state.processor, clock=clock)
    state.simulation = SimulationService(state.registry, state.scheduler)
    state.message_cache = MessageCache(fake_redis, key="test:messages", max_messages=100, ttl_hours=24)
    state.collect_stats = lambda: {"simulations_active": state.registry.active_count}
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


# ── Simulation ───────────────────────────────────────────────────────────

def test_start_simulation(client):
    resp = client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "T1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["tenant_id"] == "T1"
    assert "CALM" in body["message"]
    assert body["started_at"] is not None


def test_status_follows_the_clock(client, clock):
    client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "T1"})
    clock.advance(250)

    body = client.get("/api/v1/simulation/status", headers={"X-Tenant-ID": "T1"}).json()
    assert body == {
        "tenant_id": "T1",
        "is_active": True,
        "elapsed_seconds": 250,
        "phase": "CRITICAL",
        "description": "Critical state. Temperature exceeds thresholds. Alerts should trigger.",
    }


def test_tenant_defaults_to_demo(client):
    assert client.post("/api/v1/simulation/start").json()["tenant_id"] == "DEMO"
    assert client.get("/api/v1/simulation/status").json()["is_active"] is True
    assert client.get("/api/v1/simulation/status", headers={"X-Tenant-ID": "OTHER"}).json()["is_active"] is False


def test_invalid_tenant_header_rejected(client, app):
    resp = client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "bad tenant!"})
    assert resp.status_code == 400
    assert app.state.registry.active_count == 0


def test_stop_simulation(client):
    client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "T1"})
    body = client.post("/api/v1/simulation/stop", headers={"X-Tenant-ID": "T1"}).json()
    assert body["message"] == "Simulation stopped for tenant T1"
    assert client.get("/api/v1/simulation/status", headers={"X-Tenant-ID": "T1"}).json()["is_active"] is False

    again = client.post("/api/v1/simulation/stop", headers={"X-Tenant-ID": "T1"}).json()
    assert again["status"] == "ok"
    assert again["message"] == "No simulation running for tenant T1"


def test_generate_ticks_every_active_tenant(client, app):
    assert client.post("/api/v1/simulation/generate").json()["tenants_processed"] == 0

    client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "A"})
    client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "B"})
    body = client.post("/api/v1/simulation/generate").json()
    assert body == {"status": "ok", "tenants_processed": 2}
    assert sorted(r.tenant_id for r in app.state.sink.readings) == ["A", "B"]


# ── Rate limiter ─────────────────────────────────────────────────────────

def test_rate_limiter_stats_and_reset(client, app):
    limiter = app.state.rate_limiter
    for t in (0, 1, 2, 6):
        limiter.admit("k", t)

    stats = client.get("/api/v1/rate-limiter/stats").json()
    assert stats["enabled"] is True
    assert stats["min_interval_seconds"] == 5.0
    assert stats["total_received"] == 4
    assert stats["total_saved"] == 2
    assert stats["total_dropped"] == 2
    assert stats["drop_rate_percent"] == 50.0

    assert client.post("/api/v1/rate-limiter/reset-stats").json()["status"] == "ok"
    assert client.get("/api/v1/rate-limiter/stats").json()["total_received"] == 0


# ── Messages ─────────────────────────────────────────────────────────────

def test_latest_message_404_when_empty(client):
    assert client.get("/api/v1/greenhouse/messages/latest").status_code == 404


def test_recent_messages(client, app):
    cache = app.state.message_cache
    asyncio.run(cache.store(make_reading(0, tenant_id="A", sensor_01=20.0)))
    asyncio.run(cache.store(make_reading(1, tenant_id="B", sensor_01=21.0, setpoint_01=0.5)))

    recent = client.get("/api/v1/greenhouse/messages/recent", params={"limit": 10}).json()
    assert [m["tenant_id"] for m in recent] == ["B", "A"]
    assert recent[0]["sensors"] == {"SENSOR_01": 21.0}
    assert recent[0]["setpoints"] == {"SETPOINT_01": 0.5}

    only_a = client.get("/api/v1/greenhouse/messages/recent", params={"tenant_id": "A"}).json()
    assert len(only_a) == 1

    latest = client.get("/api/v1/greenhouse/messages/latest").json()
    assert latest["tenant_id"] == "B"

    stats = client.get("/api/v1/greenhouse/cache/stats").json()
    assert stats["total_messages"] == 2
    assert stats["max_capacity"] == 100


def test_recent_limit_validated(client):
    assert client.get("/api/v1/greenhouse/messages/recent", params={"limit": 0}).status_code == 422


def test_message_range_requires_ordered_window(client):
    resp = client.get(
        "/api/v1/greenhouse/messages/range",
        params={"start": "2025-01-02T00:00:00Z", "end": "2025-01-01T00:00:00Z"},
    )
    assert resp.status_code == 400


# ── MQTT publish ─────────────────────────────────────────────────────────

class BrokerClient:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def publish(self, topic, payload, qos=0, retain=False):
        if self.fail:
            raise ConnectionError("broker gone")
        self.sent.append((topic, payload, qos))


@pytest.fixture
def broker(app):
    ingestor = MQTTIngestor(app.state.processor, echo_topic="GREENHOUSE/RESPONSE")
    ingestor._client = BrokerClient()
    app.state.ingestor = ingestor
    return ingestor._client


def test_publish_requires_broker_connection(client):
    assert client.post("/api/v1/mqtt/publish/raw", content=b"{}").status_code == 503


def test_publish_latest_needs_a_cached_message(client, broker):
    assert client.post("/api/v1/mqtt/publish").status_code == 400
    assert broker.sent == []


def test_publish_latest_cached_message(client, app, broker):
    asyncio.run(app.state.message_cache.store(make_reading(0, greenhouse_id="007", sensor_01=19.5)))

    resp = client.post("/api/v1/mqtt/publish", params={"topic": "GREENHOUSE/MOBILE", "qos": 1})
    assert resp.status_code == 200
    body = resp.json()
    assert body["topic"] == "GREENHOUSE/MOBILE"
    assert body["qos"] == 1
    assert body["greenhouse_id"] == "007"
    assert body["data"]["sensors"] == {"SENSOR_01": 19.5}

    topic, payload, qos = broker.sent[0]
    assert (topic, qos) == ("GREENHOUSE/MOBILE", 1)
    assert json.loads(payload)["SENSOR_01"] == 19.5


def test_publish_custom_reading_defaults(client, broker):
    resp = client.post("/api/v1/mqtt/publish/custom", json={"SENSOR_01": 24.5, "SETPOINT_02": 0})
    assert resp.status_code == 200
    assert resp.json()["topic"] == "GREENHOUSE/RESPONSE"
    assert resp.json()["data"]["setpoints"] == {"SETPOINT_02": 0.0}

    topic, payload, qos = broker.sent[0]
    assert topic == "GREENHOUSE/RESPONSE"
    assert json.loads(payload)["SETPOINT_02"] == 0


def test_publish_custom_rejects_unknown_channels(client, broker):
    assert client.post("/api/v1/mqtt/publish/custom", json={"foo": 1}).status_code == 422
    assert broker.sent == []


def test_publish_raw_is_sent_unchanged(client, broker):
    resp = client.post("/api/v1/mqtt/publish/raw", params={"qos": 2}, content=b"not even json")
    assert resp.status_code == 200
    assert broker.sent == [("GREENHOUSE/RESPONSE", b"not even json", 2)]


def test_publish_qos_validated(client, broker):
    resp = client.post("/api/v1/mqtt/publish/raw", params={"qos": 3}, content=b"{}")
    assert resp.status_code == 422


def test_publish_failure_is_500(client, app, broker):
    app.state.ingestor._client = BrokerClient(fail=True)
    assert client.post("/api/v1/mqtt/publish/raw", content=b"{}").status_code == 500


# ── Health ───────────────────────────────────────────────────────────────

def test_health_without_database_is_degraded(client, app):
    client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "T1"})
    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["db_connected"] is False
    assert body["redis_connected"] is True
    assert body["simulation_scheduler_running"] is False
    assert body["active_simulations"] == 1
    assert body["version"] == app.version


def test_stats_endpoint(client):
    client.post("/api/v1/simulation/start", headers={"X-Tenant-ID": "T1"})
    assert client.get("/stats").json() == {"simulations_active": 1}


# ── WebSocket filter ─────────────────────────────────────────────────────

def test_websocket_filters():
    raw = make_reading(tenant_id="T1", greenhouse_id="001").to_json()
    assert matches(raw, None, None)
    assert matches(raw, "T1", None)
    assert matches(raw, "T1", "001")
    assert not matches(raw, "T2", None)
    assert not matches(raw, None, "002")
    assert not matches("not json", "T1", None)
