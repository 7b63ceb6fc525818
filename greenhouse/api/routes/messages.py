"""
GET /greenhouse/messages/recent — newest cached greenhouse messages
GET /greenhouse/messages/latest — the single newest message
GET /greenhouse/messages/range  — cached messages within a time window
GET /greenhouse/cache/stats     — cache size and TTL
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import get_message_cache
from ..schemas import (
    ActuatorStatusResponse, GreenhouseMessageResponse, MessageCacheStatsResponse,
)
from ...ingestion.cache import MessageCache
from ...ingestion.readings import CanonicalReading

router = APIRouter(prefix="/greenhouse")


def _to_response(reading: CanonicalReading) -> GreenhouseMessageResponse:
    actuator = None
    if reading.actuator is not None:
        actuator = ActuatorStatusResponse(
            actuator_id=reading.actuator.actuator_id,
            state=reading.actuator.state,
            value=reading.actuator.value,
        )
    return GreenhouseMessageResponse(
        timestamp=reading.timestamp,
        source=reading.source.value,
        greenhouse_id=reading.greenhouse_id,
        tenant_id=reading.tenant_id,
        sensors=reading.sensors(),
        setpoints=reading.setpoints(),
        actuator=actuator,
        channel=reading.channel,
    )


def _filter(
    readings: list[CanonicalReading],
    tenant_id: Optional[str],
    greenhouse_id: Optional[str],
) -> list[CanonicalReading]:
    return [
        r for r in readings
        if (tenant_id is None or r.tenant_id == tenant_id)
        and (greenhouse_id is None or r.greenhouse_id == greenhouse_id)
    ]


@router.get("/messages/recent", response_model=list[GreenhouseMessageResponse])
async def recent_messages(
    limit: int = Query(100, ge=1, le=1000, description="Max messages to return"),
    tenant_id: Optional[str] = Query(None),
    greenhouse_id: Optional[str] = Query(None),
    cache: MessageCache = Depends(get_message_cache),
):
    """Newest first.  Filters apply after the limit, matching the shared cache."""
    readings = await cache.recent(limit)
    return [_to_response(r) for r in _filter(readings, tenant_id, greenhouse_id)]


@router.get("/messages/latest", response_model=GreenhouseMessageResponse)
async def latest_message(cache: MessageCache = Depends(get_message_cache)):
    reading = await cache.latest()
    if reading is None:
        raise HTTPException(404, "No greenhouse messages cached")
    return _to_response(reading)


@router.get("/messages/range", response_model=list[GreenhouseMessageResponse])
async def messages_in_range(
    start: datetime = Query(..., description="Start time (ISO 8601)"),
    end: datetime = Query(..., description="End time (ISO 8601)"),
    cache: MessageCache = Depends(get_message_cache),
):
    if end <= start:
        raise HTTPException(400, "end must be after start")
    readings = await cache.between(start, end)
    return [_to_response(r) for r in readings]


@router.get("/cache/stats", response_model=MessageCacheStatsResponse)
async def cache_stats(cache: MessageCache = Depends(get_message_cache)):
    return MessageCacheStatsResponse(**await cache.stats())
