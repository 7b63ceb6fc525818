"""
Greenhouse Platform — Service Configuration
Centralises all environment-driven settings with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """All config sourced from environment / .env file."""

    # ── MQTT ─────────────────────────────────────────────────────────────
    MQTT_BROKER: str = "mosquitto"
    MQTT_PORT: int = 1883
    MQTT_USERNAME: Optional[str] = None
    MQTT_PASSWORD: Optional[str] = None
    MQTT_CLIENT_ID: str = "greenhouse-ingestor-01"
    MQTT_TOPICS: list[str] = ["GREENHOUSE", "greenhouse/#"]
    MQTT_QOS: int = 0
    MQTT_KEEPALIVE: int = 60
    MQTT_ENABLED: bool = True
    MQTT_RESPONSE_TOPIC: str = "GREENHOUSE/RESPONSE"
    MQTT_DEFAULT_GREENHOUSE_ID: str = "001"

    # ── TimescaleDB ──────────────────────────────────────────────────────
    DB_HOST: str = "timescaledb"
    DB_PORT: int = 5432
    DB_NAME: str = "greenhouse"
    DB_USER: str = "greenhouse"
    DB_PASSWORD: str = "changeme"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    # ── Redis (live updates + recent message cache) ──────────────────────
    REDIS_URL: str = "redis://redis:6379/0"
    BROADCAST_PREFIX: str = "/topic/greenhouse"
    BROADCAST_TIMEOUT_S: float = 2.0
    MESSAGE_CACHE_KEY: str = "greenhouse:messages"
    MESSAGE_CACHE_MAX: int = 1000
    MESSAGE_CACHE_TTL_HOURS: int = 24
    MESSAGE_CACHE_TIMEOUT_S: float = 2.0

    # ── Batch writer tuning ──────────────────────────────────────────────
    BATCH_SIZE: int = 500           # flush after N rows
    BATCH_FLUSH_INTERVAL: float = 1.0  # flush every N seconds (whichever first)
    BATCH_MAX_PENDING: int = 50_000    # backpressure limit — drop if exceeded

    # ── Dead letter ──────────────────────────────────────────────────────
    DLQ_ENABLED: bool = True
    DLQ_WRITE_TIMEOUT_S: float = 2.0

    # ── Rate limiter ─────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_MIN_INTERVAL_SECONDS: float = 5.0
    RATE_LIMIT_MAX_KEYS: int = 1000  # tracked streams; oldest evicted beyond this

    # ── Simulation ("10-Minute Storm") ───────────────────────────────────
    SIMULATION_SCHEDULER_ENABLED: bool = True
    SIMULATION_TICK_INTERVAL_MS: int = 1000
    SIMULATION_GREENHOUSE_ID: str = "SIMULATION_GH_01"
    CRITICAL_TEMPERATURE: float = 35.0  # °C — alert condition above this

    # ── Observability ────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    METRICS_PORT: int = 9090  # Prometheus /metrics

    @property
    def broadcast_channel(self) -> str:
        return f"{self.BROADCAST_PREFIX}/messages"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
