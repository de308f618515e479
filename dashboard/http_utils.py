from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status
from fastapi.applications import FastAPI

from dashboard.config import Settings, get_settings
from dashboard.models import SensorKind, normalize_sensor_kind
from dashboard.services.ingestion import IngestionStrategy, MqttIngestion
from dashboard.services.state import DashboardState


def dashboard_state(app: FastAPI) -> DashboardState:
    state: DashboardState | None = getattr(app.state, "dashboard", None)
    if state is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Dashboard not started")
    return state


def ingestion(app: FastAPI) -> IngestionStrategy | None:
    return getattr(app.state, "ingestion", None)


def mqtt_bridge(app: FastAPI) -> MqttIngestion | None:
    source = ingestion(app)
    return source if isinstance(source, MqttIngestion) else None


def require_mqtt_bridge(app: FastAPI) -> MqttIngestion:
    bridge = mqtt_bridge(app)
    if bridge is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="MQTT bridge is not active (ingestion mode is simulated)",
        )
    return bridge


def sensor_kind_or_404(value: Optional[str]) -> SensorKind:
    kind = normalize_sensor_kind(value)
    if kind is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device type not found")
    return kind


def app_settings(app: FastAPI) -> Settings:
    return getattr(app.state, "settings", None) or get_settings()
