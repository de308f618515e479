from __future__ import annotations

import os

import psutil
from fastapi import APIRouter, Request

from dashboard.http_utils import app_settings, dashboard_state, mqtt_bridge
from dashboard.models import isoformat, utc_now

router = APIRouter()

_process = psutil.Process(os.getpid())


@router.get("/")
async def banner(request: Request):
    settings = app_settings(request.app)
    return {
        "message": "Sensor dashboard backend is running",
        "service": settings.service_name,
        "version": settings.service_version,
        "ingestionMode": settings.ingestion_mode,
        "endpoints": {
            "health": "/api/health",
            "devices": "/api/devices",
            "history": "/api/history/{deviceType}",
            "analytics": "/api/analytics/{deviceType}",
            "mqtt": "/api/mqtt/status",
            "websocket": "/ws",
        },
        "timestamp": isoformat(utc_now()),
    }


@router.get("/api/health")
async def health(request: Request):
    settings = app_settings(request.app)
    state = dashboard_state(request.app)
    bridge = mqtt_bridge(request.app)
    return {
        "status": "healthy",
        "uptime": round(state.uptime_seconds, 3),
        "timestamp": isoformat(utc_now()),
        "connectedClients": state.broadcaster.session_count,
        "ingestionMode": settings.ingestion_mode,
        "mqttConnected": bridge.connected if bridge else None,
        "storage": {"backend": settings.storage.backend, "insertFailures": state.insert_failures},
        "process": {
            "rss_bytes": _process.memory_info().rss,
            "cpu_percent": _process.cpu_percent(interval=None),
        },
    }
