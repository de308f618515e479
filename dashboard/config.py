"""Runtime configuration for the sensor dashboard backend."""
from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INTERVAL_SECONDS = 0.1
MAX_INTERVAL_SECONDS = 3600.0


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class SimulationConfig(BaseModel):
    """Random-walk free generator used when no broker feeds the dashboard."""

    interval_seconds: float = Field(default=1.0, description="Snapshot regeneration cadence")
    seed: Optional[int] = Field(default=None, description="Optional seed for repeatable runs")

    @field_validator("interval_seconds")
    @classmethod
    def _clamp_interval(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="simulation.interval_seconds")


class StorageConfig(BaseModel):
    backend: Literal["memory", "sql"] = Field(default="memory", description="Reading sink implementation")
    database_url: str = Field(
        default="sqlite:///storage/readings.db",
        description="SQLAlchemy URL used by the sql backend",
    )
    high_watermark: int = Field(default=1000, ge=2, description="Memory sink compaction trigger")
    low_watermark: int = Field(default=500, ge=1, description="Entries kept after compaction")
    timescale: bool = Field(
        default=False,
        description="Convert the readings table to a TimescaleDB hypertable (PostgreSQL only)",
    )

    @model_validator(mode="after")
    def _check_watermarks(self):
        if self.low_watermark >= self.high_watermark:
            raise ValueError("storage.low_watermark must be below storage.high_watermark")
        return self


class Settings(BaseSettings):
    """Environment driven settings for the dashboard process."""

    service_name: str = "sensor-dashboard"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_service_name: str = "sensor-dashboard"
    otel_exporter_otlp_endpoint: str = "http://127.0.0.1:4317"
    otel_exporter_otlp_headers: Optional[str] = None
    otel_sample_ratio: float = 1.0
    host: str = "0.0.0.0"
    port: int = Field(default=3001, validation_alias=AliasChoices("port", "DASHBOARD_PORT", "PORT"))
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    ingestion_mode: Literal["simulated", "mqtt"] = Field(
        default="simulated",
        description="Where readings come from: local generator or the MQTT combined topic",
    )
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    activity_interval_seconds: float = 5.0
    push_send_timeout_seconds: float = Field(
        default=5.0,
        description="Per-session WebSocket send deadline; slower sessions are dropped",
    )
    mqtt_url: str = Field(default="mqtt://localhost:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id_prefix: str = "dashboard-backend"
    mqtt_topic: str = Field(default="sensors/combined", description="Combined sensor batch topic")
    mqtt_extra_topics: List[str] = Field(
        default_factory=list,
        description="Additional patterns subscribed for relay statistics only",
    )
    mqtt_qos: int = Field(default=1, ge=0, le=2)
    mqtt_reconnect_seconds: float = 1.0
    mqtt_connect_timeout_seconds: float = 4.0
    mqtt_keepalive_seconds: int = Field(default=60, ge=1)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("activity_interval_seconds")
    @classmethod
    def _clamp_activity(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="activity_interval_seconds")

    @field_validator("push_send_timeout_seconds")
    @classmethod
    def _clamp_send_timeout(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="push_send_timeout_seconds")

    @field_validator("mqtt_reconnect_seconds")
    @classmethod
    def _clamp_reconnect(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="mqtt_reconnect_seconds")

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "localhost"

    @property
    def mqtt_port(self) -> int:
        return _parsed_mqtt(self.mqtt_url).port or 1883

    @property
    def mqtt_topics(self) -> List[str]:
        topics = [self.mqtt_topic]
        for pattern in self.mqtt_extra_topics:
            if pattern not in topics:
                topics.append(pattern)
        return topics


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
