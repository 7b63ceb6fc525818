"""
POST /mqtt/publish        — republish the newest cached message
POST /mqtt/publish/custom — publish a greenhouse reading from the request body
POST /mqtt/publish/raw    — publish the request body as-is

All three go out over the ingestor's broker connection.  `topic` defaults to
MQTT_RESPONSE_TOPIC and `qos` to MQTT_QOS.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from ..deps import get_ingestor, get_message_cache
from ..schemas import MqttPublishResponse
from .messages import _to_response
from ...ingestion.cache import MessageCache
from ...ingestion.config import settings
from ...ingestion.ingestor import MQTTIngestor
from ...ingestion.readings import PayloadError, SourceKind, parse_reading

logger = logging.getLogger("greenhouse.api.mqtt")

router = APIRouter(prefix="/mqtt")


async def _publish(ingestor: MQTTIngestor, topic: Optional[str], qos: Optional[int], payload) -> tuple[str, int]:
    topic = topic or settings.MQTT_RESPONSE_TOPIC
    qos = settings.MQTT_QOS if qos is None else qos
    if not await ingestor.publish(topic, payload, qos=qos):
        raise HTTPException(500, f"Failed to publish to MQTT topic {topic}")
    return topic, qos


@router.post("/publish", response_model=MqttPublishResponse)
async def publish_latest(
    topic: Optional[str] = Query(None, min_length=1, description="Default MQTT_RESPONSE_TOPIC"),
    qos: Optional[int] = Query(None, ge=0, le=2, description="0, 1 or 2"),
    cache: MessageCache = Depends(get_message_cache),
    ingestor: MQTTIngestor = Depends(get_ingestor),
):
    """Send the last received message back to the broker to cross-check what arrived."""
    reading = await cache.latest()
    if reading is None:
        raise HTTPException(400, "No greenhouse messages cached")

    topic, qos = await _publish(ingestor, topic, qos, reading.to_json())
    logger.info("Republished latest message — greenhouse=%s topic=%s", reading.greenhouse_id, topic)
    return MqttPublishResponse(
        message="Latest message published to the MQTT broker",
        topic=topic,
        qos=qos,
        greenhouse_id=reading.greenhouse_id,
        data=_to_response(reading),
    )


@router.post("/publish/custom", response_model=MqttPublishResponse)
async def publish_custom(
    payload: dict[str, Any] = Body(..., examples=[{"SENSOR_01": 24.5, "SETPOINT_01": 50}]),
    topic: Optional[str] = Query(None, min_length=1, description="Default MQTT_RESPONSE_TOPIC"),
    qos: Optional[int] = Query(None, ge=0, le=2, description="0, 1 or 2"),
    ingestor: MQTTIngestor = Depends(get_ingestor),
):
    try:
        reading = parse_reading(payload, SourceKind.MQTT_GREENHOUSE)
    except PayloadError as e:
        raise HTTPException(422, str(e))
    if reading.is_empty:
        raise HTTPException(422, "Payload has no known sensor or setpoint channels")

    topic, qos = await _publish(ingestor, topic, qos, reading.to_json())
    return MqttPublishResponse(
        message="Custom message published to the MQTT broker",
        topic=topic,
        qos=qos,
        greenhouse_id=reading.greenhouse_id,
        data=_to_response(reading),
    )


@router.post("/publish/raw", response_model=MqttPublishResponse)
async def publish_raw(
    request: Request,
    topic: Optional[str] = Query(None, min_length=1, description="Default MQTT_RESPONSE_TOPIC"),
    qos: Optional[int] = Query(None, ge=0, le=2, description="0, 1 or 2"),
    ingestor: MQTTIngestor = Depends(get_ingestor),
):
    """No validation: the body goes to the broker byte for byte."""
    body = await request.body()
    if not body:
        raise HTTPException(400, "Empty payload")

    topic, qos = await _publish(ingestor, topic, qos, body)
    return MqttPublishResponse(message="Raw payload published to the MQTT broker", topic=topic, qos=qos)
