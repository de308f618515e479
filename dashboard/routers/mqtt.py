from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from dashboard.http_utils import require_mqtt_bridge
from dashboard.models import isoformat, utc_now
from dashboard.schemas import MqttPublishRequest
from dashboard.services.ingestion import BridgeUnavailableError

router = APIRouter(prefix="/api/mqtt")


@router.get("/status")
async def bridge_status(request: Request):
    return require_mqtt_bridge(request.app).status()


@router.get("/topics")
async def bridge_topics(request: Request):
    bridge = require_mqtt_bridge(request.app)
    return {"subscriptions": bridge.settings.mqtt_topics, "topics": bridge.stats.topics()}


@router.get("/devices")
async def bridge_devices(request: Request):
    return require_mqtt_bridge(request.app).stats.devices()


@router.post("/publish")
async def publish_message(payload: MqttPublishRequest, request: Request):
    bridge = require_mqtt_bridge(request.app)
    body = payload.payload_bytes()
    try:
        await bridge.publish(payload.topic, body, qos=payload.options.qos, retain=payload.options.retain)
    except BridgeUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {
        "success": True,
        "topic": payload.topic,
        "bytes": len(body),
        "timestamp": isoformat(utc_now()),
    }
