"""
Greenhouse Platform — MQTT Ingestor

Subscribes to the greenhouse topics on the MQTT broker, works out which
greenhouse and channel each message belongs to from the topic, and hands the
payload to the shared MessageProcessor.

Topics:
  GREENHOUSE                              multi-channel payload, default greenhouse
  greenhouse/{greenhouse_id}/data         multi-channel payload
  greenhouse/{greenhouse_id}/sensors/{t}  single sensor of type t
  greenhouse/{greenhouse_id}/actuators/status

Every well-formed multi-channel message is echoed to MQTT_RESPONSE_TOPIC,
whether or not the rate limiter stores it, so external systems (Node-RED, the
broker dashboard) can verify what the backend received.  Malformed payloads
are dead-lettered instead.

Architecture:
  MQTT broker
      │
      ▼
  Topic parser ──── unknown? ──→ Dead Letter Queue
      │
      ▼
  MessageProcessor (shared with the simulation scheduler)
      │
      ▼
  Echo publisher ── GREENHOUSE/RESPONSE
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

import aiomqtt

from .config import settings
from .dead_letter import DeadLetterQueue
from .processor import MessageProcessor, Outcome
from .readings import SourceKind

logger = logging.getLogger("greenhouse.ingestor")

GREENHOUSE_TOPIC = "GREENHOUSE"

TOPIC_PATTERN = re.compile(
    r"^greenhouse/([A-Za-z0-9_-]+)/(?:(data)|sensors/([A-Za-z0-9_-]+)|actuators/(status))$"
)


@dataclass(frozen=True, slots=True)
class TopicRoute:
    source: SourceKind
    greenhouse_id: str
    channel: Optional[str] = None


def parse_topic(
    topic: str, default_greenhouse_id: str = settings.MQTT_DEFAULT_GREENHOUSE_ID
) -> Optional[TopicRoute]:
    """
    Map an MQTT topic to its source kind, greenhouse and channel.
    Returns None if the topic doesn't match any greenhouse pattern.
    """
    if topic == GREENHOUSE_TOPIC:
        return TopicRoute(SourceKind.MQTT_GREENHOUSE, default_greenhouse_id)

    m = TOPIC_PATTERN.match(topic)
    if m is None:
        return None
    greenhouse_id, data, sensor_type, actuator_status = m.groups()
    if data:
        return TopicRoute(SourceKind.MQTT_GREENHOUSE, greenhouse_id)
    if sensor_type:
        return TopicRoute(SourceKind.MQTT_SENSOR, greenhouse_id, sensor_type)
    return TopicRoute(SourceKind.MQTT_ACTUATOR_STATUS, greenhouse_id, "actuators")


class MQTTIngestor:
    """MQTT consumer that feeds the message processor."""

    def __init__(
        self,
        processor: MessageProcessor,
        dead_letter: Optional[DeadLetterQueue] = None,
        echo_topic: Optional[str] = settings.MQTT_RESPONSE_TOPIC,
    ) -> None:
        self.processor = processor
        self._dlq = dead_letter
        self.echo_topic = echo_topic
        self._client: Optional[aiomqtt.Client] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._received = 0
        self._echoed = 0
        self._echo_errors = 0
        self._invalid_topics = 0

    async def start(self) -> None:
        """Start the consumer as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._consume(), name="mqtt-consumer")

    async def stop(self) -> None:
        """Graceful shutdown."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("MQTT ingestor stopped — %d messages received", self._received)

    async def _consume(self) -> None:
        """
        Main MQTT consumer loop with auto-reconnect.
        Uses aiomqtt for clean async integration.
        """
        while self._running:
            try:
                async with aiomqtt.Client(
                    hostname=settings.MQTT_BROKER,
                    port=settings.MQTT_PORT,
                    username=settings.MQTT_USERNAME,
                    password=settings.MQTT_PASSWORD,
                    identifier=settings.MQTT_CLIENT_ID,
                    keepalive=settings.MQTT_KEEPALIVE,
                ) as client:
                    self._client = client
                    for topic in settings.MQTT_TOPICS:
                        await client.subscribe(topic, qos=settings.MQTT_QOS)
                    logger.info(
                        "Connected to MQTT broker %s:%d — subscribed to %s",
                        settings.MQTT_BROKER,
                        settings.MQTT_PORT,
                        ", ".join(settings.MQTT_TOPICS),
                    )

                    async for message in client.messages:
                        if not self._running:
                            break
                        await self.handle_message(
                            str(message.topic), message.payload, message.qos
                        )

            except aiomqtt.MqttError as e:
                logger.error("MQTT connection lost: %s — reconnecting in 5s", e)
                await asyncio.sleep(5)
            except Exception:
                logger.exception("Unexpected error in MQTT consumer — reconnecting in 10s")
                await asyncio.sleep(10)
            finally:
                self._client = None

    async def handle_message(
        self, topic: str, payload: Union[bytes, str, bytearray, None], qos: int = 0
    ) -> bool:
        """Route a single MQTT message into the pipeline."""
        self._received += 1
        if isinstance(payload, bytearray):
            payload = bytes(payload)
        if payload is None:
            payload = b""

        if topic == self.echo_topic:
            return False

        route = parse_topic(topic)
        if route is None:
            self._invalid_topics += 1
            logger.warning("Invalid greenhouse topic: %s", topic)
            if self._dlq is not None:
                await self._dlq.send(
                    topic=topic,
                    payload=payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload),
                    error_category="TOPIC_ERROR",
                    error_message="Topic does not match GREENHOUSE or greenhouse/{id}/(data|sensors/{type}|actuators/status)",
                )
            return False

        logger.debug("%s message received — topic=%s qos=%s", route.source.value, topic, qos)

        outcome = await self.processor.submit(
            payload,
            route.greenhouse_id,
            route.source,
            channel=route.channel,
            topic=topic,
        )

        # Rate-limited and channel-less messages were still received intact
        if outcome is not Outcome.MALFORMED and route.source == SourceKind.MQTT_GREENHOUSE:
            await self._echo(payload, route.greenhouse_id)
        return outcome is Outcome.ACCEPTED

    async def publish(
        self, topic: str, payload: Union[bytes, str], qos: int = settings.MQTT_QOS
    ) -> bool:
        """
        Publish through the consumer's broker connection.  Returns False when
        the ingestor isn't connected or the broker rejects the message.
        """
        if self._client is None:
            logger.warning("MQTT publish to %s skipped — not connected", topic)
            return False
        try:
            await self._client.publish(topic, payload, qos=qos, retain=False)
        except Exception:
            logger.exception("Error publishing MQTT message to %s", topic)
            return False
        logger.debug("MQTT message published — topic=%s qos=%d", topic, qos)
        return True

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def _echo(self, payload: Union[bytes, str], greenhouse_id: str) -> None:
        """Send the message back to the broker.  Failures never affect ingestion."""
        if not self.echo_topic or self._client is None:
            return
        if await self.publish(self.echo_topic, payload):
            self._echoed += 1
            logger.debug("MQTT echo sent — greenhouse=%s topic=%s", greenhouse_id, self.echo_topic)
        else:
            self._echo_errors += 1

    @property
    def stats(self) -> dict:
        return {
            "received": self._received,
            "echoed": self._echoed,
            "echo_errors": self._echo_errors,
            "invalid_topics": self._invalid_topics,
        }
