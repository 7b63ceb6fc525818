"""
Greenhouse API — Response Schemas

Pydantic models for the simulation control, rate limiter, live message and
MQTT publish endpoints consumed by the web dashboard and the mobile app.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


# ── Simulation ───────────────────────────────────────────────────────────

class SimulationStatusResponse(BaseModel):
    tenant_id: str
    is_active: bool
    elapsed_seconds: int = 0
    phase: str = ""
    description: str = ""

    model_config = {"from_attributes": True}


class SimulationActionResponse(BaseModel):
    status: str = "ok"
    tenant_id: Optional[str] = None
    message: str
    started_at: Optional[datetime] = None


class TickResponse(BaseModel):
    status: str = "ok"
    tenants_processed: int


# ── Rate limiter ─────────────────────────────────────────────────────────

class RateLimiterStatsResponse(BaseModel):
    enabled: bool
    min_interval_seconds: float
    total_received: int
    total_saved: int
    total_dropped: int
    drop_rate_percent: float = Field(..., description="Dropped / received × 100")
    tracked_keys: int = 0

    model_config = {"from_attributes": True}


class ResetResponse(BaseModel):
    status: str = "ok"
    message: str


# ── Greenhouse messages ──────────────────────────────────────────────────

class ActuatorStatusResponse(BaseModel):
    actuator_id: str
    state: Optional[str] = None
    value: Optional[float] = None


class GreenhouseMessageResponse(BaseModel):
    timestamp: datetime
    source: str
    greenhouse_id: Optional[str] = None
    tenant_id: Optional[str] = None
    sensors: dict[str, float] = {}
    setpoints: dict[str, float] = {}
    actuator: Optional[ActuatorStatusResponse] = None
    channel: Optional[str] = None


class MessageCacheStatsResponse(BaseModel):
    total_messages: int
    ttl_seconds: int
    max_capacity: int


# ── MQTT publish ─────────────────────────────────────────────────────────

class MqttPublishResponse(BaseModel):
    status: str = "ok"
    message: str
    topic: str
    qos: int
    greenhouse_id: Optional[str] = None
    data: Optional[GreenhouseMessageResponse] = None


# ── Health ───────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    version: str
    db_connected: bool
    redis_connected: bool
    simulation_scheduler_running: bool
    active_simulations: int
    uptime_seconds: float
