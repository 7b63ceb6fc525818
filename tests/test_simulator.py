import random
from datetime import datetime, timezone

from greenhouse.ingestion.readings import SourceKind, parse_reading
from greenhouse.simulator.__main__ import (
    HUMIDITY_RANGE, TEMPERATURE_RANGE, generate_extractor_status, generate_payload, greenhouse_topic,
)


def test_payload_values_stay_in_realistic_ranges():
    rng = random.Random(11)
    for _ in range(500):
        payload = generate_payload(rng)
        assert TEMPERATURE_RANGE[0] <= payload["SENSOR_01"] <= TEMPERATURE_RANGE[1]
        assert HUMIDITY_RANGE[0] <= payload["SENSOR_02"] <= HUMIDITY_RANGE[1]
        for code in ("SETPOINT_01", "SETPOINT_02", "SETPOINT_03"):
            assert payload[code] in (0.0, 100.0) or 30.0 <= payload[code] <= 70.0


def test_payload_is_accepted_by_the_ingestion_parser():
    ts = datetime(2025, 6, 1, tzinfo=timezone.utc)
    payload = generate_payload(random.Random(5), ts)
    reading = parse_reading(payload, SourceKind.MQTT_GREENHOUSE)
    assert reading.timestamp == ts
    assert len(reading.channel_values()) == 5


def test_extractor_status_shape():
    status = generate_extractor_status(random.Random(2), "001")
    assert status["actuator_id"] == "EXTRACTOR-001"
    assert (status["state"], status["value"]) in (("ON", 1.0), ("OFF", 0.0))


def test_topic_per_greenhouse_count():
    assert greenhouse_topic("001", greenhouse_count=1) == "GREENHOUSE"
    assert greenhouse_topic("002", greenhouse_count=3) == "greenhouse/002/data"
