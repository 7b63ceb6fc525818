import pytest

from greenhouse.ingestion.ingestor import MQTTIngestor, parse_topic
from greenhouse.ingestion.processor import MessageProcessor
from greenhouse.ingestion.rate_limiter import RateLimiter
from greenhouse.ingestion.readings import SourceKind

from conftest import RecordingDeadLetters, RecordingSink


class FakeMqttClient:
    def __init__(self, fail=False):
        self.published = []
        self.qos = []
        self.fail = fail

    async def publish(self, topic, payload, qos=0, retain=False):
        if self.fail:
            raise ConnectionError("broker gone")
        self.published.append((topic, payload))
        self.qos.append(qos)


@pytest.mark.parametrize("topic, source, greenhouse_id, channel", [
    ("GREENHOUSE", SourceKind.MQTT_GREENHOUSE, "001", None),
    ("greenhouse/gh-7/data", SourceKind.MQTT_GREENHOUSE, "gh-7", None),
    ("greenhouse/gh-7/sensors/temperature", SourceKind.MQTT_SENSOR, "gh-7", "temperature"),
    ("greenhouse/002/actuators/status", SourceKind.MQTT_ACTUATOR_STATUS, "002", "actuators"),
])
def test_parse_topic(topic, source, greenhouse_id, channel):
    route = parse_topic(topic, default_greenhouse_id="001")
    assert route.source is source
    assert route.greenhouse_id == greenhouse_id
    assert route.channel == channel


@pytest.mark.parametrize("topic", [
    "greenhouse",
    "greenhouse/001",
    "greenhouse/001/sensors",
    "greenhouse/001/actuators/commands",
    "greenhouse/0 1/data",
    "other/001/data",
    "GREENHOUSE/RESPONSE",
])
def test_unknown_topics(topic):
    assert parse_topic(topic) is None


@pytest.fixture
def pipeline():
    sink = RecordingSink()
    dlq = RecordingDeadLetters()
    processor = MessageProcessor(RateLimiter(enabled=False), store=sink, dead_letter=dlq)
    ingestor = MQTTIngestor(processor, dead_letter=dlq, echo_topic="GREENHOUSE/RESPONSE")
    ingestor._client = FakeMqttClient()
    return ingestor, sink, dlq


async def test_greenhouse_message_is_processed_and_echoed(pipeline):
    ingestor, sink, _ = pipeline
    payload = b'{"SENSOR_01": 1.23, "SENSOR_02": 2.23}'

    assert await ingestor.handle_message("GREENHOUSE", payload)

    reading = sink.readings[0]
    assert reading.source is SourceKind.MQTT_GREENHOUSE
    assert reading.sensor_01 == 1.23
    assert ingestor._client.published == [("GREENHOUSE/RESPONSE", payload)]
    assert ingestor.stats["echoed"] == 1


async def test_sensor_message_routed_without_echo(pipeline):
    ingestor, sink, _ = pipeline
    assert await ingestor.handle_message(
        "greenhouse/gh-7/sensors/humidity", b'{"sensor_id": "SENSOR_02", "value": 64.0}'
    )
    reading = sink.readings[0]
    assert reading.greenhouse_id == "gh-7"
    assert reading.channel == "humidity"
    assert reading.sensor_02 == 64.0
    assert ingestor._client.published == []


async def test_actuator_status(pipeline):
    ingestor, sink, _ = pipeline
    assert await ingestor.handle_message(
        "greenhouse/001/actuators/status", bytearray(b'{"actuator_id": "FAN-01", "state": "OFF", "value": 0}')
    )
    assert sink.readings[0].actuator.state == "OFF"


async def test_invalid_topic_dead_lettered(pipeline):
    ingestor, sink, dlq = pipeline
    assert not await ingestor.handle_message("greenhouse/001/unknown", b"{}")
    assert dlq.letters[0]["category"] == "TOPIC_ERROR"
    assert ingestor.stats["invalid_topics"] == 1
    assert not sink.readings


async def test_own_echo_is_ignored(pipeline):
    ingestor, sink, dlq = pipeline
    assert not await ingestor.handle_message("GREENHOUSE/RESPONSE", b'{"SENSOR_01": 1}')
    assert not sink.readings
    assert not dlq.letters


async def test_malformed_payload_not_echoed(pipeline):
    ingestor, sink, dlq = pipeline
    assert not await ingestor.handle_message("GREENHOUSE", b"garbage")
    assert ingestor._client.published == []
    assert dlq.letters[0]["category"] == "PARSE_ERROR"


async def test_echo_failure_does_not_affect_ingestion(pipeline):
    ingestor, sink, _ = pipeline
    ingestor._client = FakeMqttClient(fail=True)
    assert await ingestor.handle_message("GREENHOUSE", b'{"SENSOR_01": 1}')
    assert len(sink.readings) == 1
    assert ingestor.stats["echo_errors"] == 1


async def test_no_echo_without_connection(pipeline):
    ingestor, sink, _ = pipeline
    ingestor._client = None
    assert await ingestor.handle_message("GREENHOUSE", b'{"SENSOR_01": 1}')
    assert ingestor.stats["echoed"] == 0


async def test_rate_limited_message_is_still_echoed():
    sink = RecordingSink()
    processor = MessageProcessor(RateLimiter(min_interval=5, enabled=True), store=sink)
    ingestor = MQTTIngestor(processor, echo_topic="GREENHOUSE/RESPONSE")
    ingestor._client = FakeMqttClient()

    assert await ingestor.handle_message("GREENHOUSE", b'{"SENSOR_01": 1}')
    assert not await ingestor.handle_message("GREENHOUSE", b'{"SENSOR_01": 2}')

    assert len(sink.readings) == 1
    assert [p for _, p in ingestor._client.published] == [b'{"SENSOR_01": 1}', b'{"SENSOR_01": 2}']
    assert ingestor.stats["echoed"] == 2


async def test_publish_uses_requested_topic_and_qos(pipeline):
    ingestor, _, _ = pipeline
    assert ingestor.connected
    assert await ingestor.publish("GREENHOUSE/MOBILE", '{"SENSOR_01": 5}', qos=1)
    assert ingestor._client.published == [("GREENHOUSE/MOBILE", '{"SENSOR_01": 5}')]
    assert ingestor._client.qos == [1]


async def test_publish_reports_failure(pipeline):
    ingestor, _, _ = pipeline
    ingestor._client = FakeMqttClient(fail=True)
    assert not await ingestor.publish("GREENHOUSE/RESPONSE", "{}")

    ingestor._client = None
    assert not ingestor.connected
    assert not await ingestor.publish("GREENHOUSE/RESPONSE", "{}")
