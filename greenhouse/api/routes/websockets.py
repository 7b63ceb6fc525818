"""
WebSocket endpoint for live greenhouse readings.

WS /ws/greenhouse — every accepted reading, simulated or from a device

The processor's Broadcaster publishes each reading as JSON on the shared
Redis channel (/topic/greenhouse/messages); this endpoint relays that channel
to dashboard and mobile clients, optionally filtered to one tenant or one
greenhouse.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from starlette.websockets import WebSocketState

from ...ingestion.config import settings

router = APIRouter()
logger = logging.getLogger("greenhouse.ws")


def matches(raw: str, tenant_id: Optional[str], greenhouse_id: Optional[str]) -> bool:
    """True when a broadcast message passes the client's filters."""
    if not tenant_id and not greenhouse_id:
        return True
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return False
    if not isinstance(data, dict):
        return False
    if tenant_id and data.get("tenant_id") != tenant_id:
        return False
    if greenhouse_id and data.get("greenhouse_id") != greenhouse_id:
        return False
    return True


@router.websocket("/ws/greenhouse")
async def ws_greenhouse(
    websocket: WebSocket,
    tenant_id: Optional[str] = Query(None),
    greenhouse_id: Optional[str] = Query(None),
):
    """
    Real-time greenhouse message stream.

    Optional filters:
      - tenant_id: only readings for this tenant (e.g. its running simulation)
      - greenhouse_id: only readings for this greenhouse
    """
    await websocket.accept()
    redis = websocket.app.state.redis
    channel = settings.broadcast_channel

    logger.info("WS greenhouse connected: tenant=%s greenhouse=%s", tenant_id, greenhouse_id)

    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    try:
        async for message in pubsub.listen():
            if websocket.client_state != WebSocketState.CONNECTED:
                break
            if message["type"] != "message":
                continue
            if not matches(message["data"], tenant_id, greenhouse_id):
                continue
            await websocket.send_text(message["data"])
    except WebSocketDisconnect:
        logger.info("WS greenhouse disconnected: tenant=%s", tenant_id)
    except Exception:
        logger.exception("WS greenhouse error: tenant=%s", tenant_id)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
