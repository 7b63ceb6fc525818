"""
Greenhouse Platform — Canonical Readings

Every telemetry message, simulated or from a real device, is normalised into a
CanonicalReading before it touches the rate limiter or any sink.

Greenhouse payload contract (MQTT topic GREENHOUSE):
    {"SENSOR_01": 1.23, "SENSOR_02": 2.23, "SETPOINT_01": 0.1, "SETPOINT_02": 0.2, "SETPOINT_03": 0.3}

Single sensor contract (greenhouse/{id}/sensors/{type}):
    {"sensor_id": "SENSOR_01", "value": 21.4, "timestamp": "ISO8601", "unit": "°C"}

Actuator status contract (greenhouse/{id}/actuators/status):
    {"actuator_id": "FAN-01", "state": "ON", "value": 1.0, "timestamp": "ISO8601"}

A channel missing from the payload stays None.  Zero is a valid reading.
"""

import json
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union


class PayloadError(ValueError):
    """Raised when a payload cannot be turned into a CanonicalReading."""


class SourceKind(str, Enum):
    SIMULATED = "SIMULATED"
    MQTT_GREENHOUSE = "MQTT_GREENHOUSE"
    MQTT_SENSOR = "MQTT_SENSOR"
    MQTT_ACTUATOR_STATUS = "MQTT_ACTUATOR_STATUS"


# ── Known channels ───────────────────────────────────────────────────────
# code → (attribute, sensor_type, unit)
CHANNELS: dict[str, tuple[str, str, str]] = {
    "SENSOR_01": ("sensor_01", "SENSOR", "°C"),     # air temperature
    "SENSOR_02": ("sensor_02", "SENSOR", "%"),      # relative humidity
    "SETPOINT_01": ("setpoint_01", "SETPOINT", "value"),
    "SETPOINT_02": ("setpoint_02", "SETPOINT", "value"),
    "SETPOINT_03": ("setpoint_03", "SETPOINT", "value"),
}


@dataclass(slots=True)
class ActuatorStatus:
    actuator_id: str
    state: Optional[str] = None
    value: Optional[float] = None


@dataclass(slots=True)
class CanonicalReading:
    """Normalised telemetry message, independent of its origin."""
    timestamp: datetime
    source: SourceKind
    sensor_01: Optional[float] = None
    sensor_02: Optional[float] = None
    setpoint_01: Optional[float] = None
    setpoint_02: Optional[float] = None
    setpoint_03: Optional[float] = None
    greenhouse_id: Optional[str] = None
    tenant_id: Optional[str] = None
    raw_payload: Optional[str] = None
    actuator: Optional[ActuatorStatus] = None
    channel: Optional[str] = None   # topic channel kind, e.g. sensor type

    def channel_values(self) -> dict[str, float]:
        """Present channels only, keyed by channel code."""
        values = {}
        for code, (attr, _, _) in CHANNELS.items():
            v = getattr(self, attr)
            if v is not None:
                values[code] = v
        return values

    def sensors(self) -> dict[str, float]:
        return {k: v for k, v in self.channel_values().items() if CHANNELS[k][1] == "SENSOR"}

    def setpoints(self) -> dict[str, float]:
        return {k: v for k, v in self.channel_values().items() if CHANNELS[k][1] == "SETPOINT"}

    @property
    def is_empty(self) -> bool:
        return self.actuator is None and not self.channel_values()

    @property
    def rate_key(self) -> str:
        """Rate limiter key: one stream per tenant / greenhouse / channel kind."""
        return ":".join((
            self.tenant_id or "-",
            self.greenhouse_id or "-",
            self.channel or self.source.value,
        ))

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "greenhouse_id": self.greenhouse_id,
            "tenant_id": self.tenant_id,
        }
        for code, (attr, _, _) in CHANNELS.items():
            data[code] = getattr(self, attr)
        if self.actuator is not None:
            data["actuator"] = {
                "actuator_id": self.actuator.actuator_id,
                "state": self.actuator.state,
                "value": self.actuator.value,
            }
        if self.channel is not None:
            data["channel"] = self.channel
        data["raw_payload"] = self.raw_payload
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanonicalReading":
        """Inverse of to_dict (used when reading back from the message cache)."""
        actuator = data.get("actuator")
        kwargs = {
            attr: _as_float(data.get(code)) for code, (attr, _, _) in CHANNELS.items()
        }
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            source=SourceKind(data.get("source", SourceKind.MQTT_GREENHOUSE.value)),
            greenhouse_id=data.get("greenhouse_id"),
            tenant_id=data.get("tenant_id"),
            raw_payload=data.get("raw_payload"),
            channel=data.get("channel"),
            actuator=ActuatorStatus(**actuator) if actuator else None,
            **kwargs,
        )


def _as_float(v: Any) -> Optional[float]:
    """Coerce a JSON value to float; None for null / non-numeric / NaN / Inf."""
    if v is None:
        return None
    if isinstance(v, bool):
        return 1.0 if v else 0.0
    if isinstance(v, (int, float)):
        f = float(v)
    elif isinstance(v, str):
        try:
            f = float(v)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise PayloadError(f"Invalid timestamp: {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _decode(payload: Union[str, bytes, Mapping[str, Any]]) -> tuple[dict, str]:
    if isinstance(payload, Mapping):
        return dict(payload), json.dumps(payload, default=str)
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadError("Payload is not valid UTF-8") from e
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise PayloadError(f"Malformed JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise PayloadError("Payload must be a JSON object")
    return data, payload


def parse_reading(
    payload: Union[str, bytes, Mapping[str, Any]],
    source: SourceKind,
    greenhouse_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    channel: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CanonicalReading:
    """
    Parse a raw payload into a CanonicalReading.

    Unknown keys are ignored.  The payload's own "timestamp" wins over the
    `timestamp` argument, which in turn defaults to now (UTC).
    Raises PayloadError for malformed JSON, a non-object top level, or an
    unparseable timestamp.
    """
    data, raw = _decode(payload)

    if "timestamp" in data and data["timestamp"] is not None:
        ts = _parse_timestamp(data["timestamp"])
    else:
        ts = timestamp or datetime.now(timezone.utc)

    reading = CanonicalReading(
        timestamp=ts,
        source=source,
        greenhouse_id=greenhouse_id,
        tenant_id=tenant_id,
        raw_payload=raw,
        channel=channel,
    )

    if source == SourceKind.MQTT_ACTUATOR_STATUS:
        actuator_id = data.get("actuator_id")
        if actuator_id is None:
            raise PayloadError("Actuator status without actuator_id")
        state = data.get("state")
        reading.actuator = ActuatorStatus(
            actuator_id=str(actuator_id),
            state=str(state) if state is not None else None,
            value=_as_float(data.get("value")),
        )
        return reading

    # Single-sensor form: {"sensor_id": "SENSOR_01", "value": 21.4}
    if "sensor_id" in data and "value" in data:
        data = {str(data["sensor_id"]): data["value"]}

    for code, (attr, _, _) in CHANNELS.items():
        if code in data:
            setattr(reading, attr, _as_float(data[code]))
    return reading


def from_simulation(
    temperature: float,
    humidity: float,
    tenant_id: str,
    greenhouse_id: str,
    timestamp: datetime,
) -> CanonicalReading:
    """Build the reading a simulation tick feeds into the processor."""
    reading = CanonicalReading(
        timestamp=timestamp,
        source=SourceKind.SIMULATED,
        sensor_01=temperature,
        sensor_02=humidity,
        greenhouse_id=greenhouse_id,
        tenant_id=tenant_id,
    )
    reading.raw_payload = json.dumps(reading.channel_values())
    return reading


def with_origin(
    reading: CanonicalReading,
    greenhouse_id: Optional[str],
    tenant_id: Optional[str],
) -> CanonicalReading:
    """Fill in missing identifiers without touching the channel values."""
    return replace(
        reading,
        greenhouse_id=reading.greenhouse_id or greenhouse_id,
        tenant_id=reading.tenant_id or tenant_id,
    )
