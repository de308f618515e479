import pytest
from pydantic import ValidationError

from dashboard.config import Settings, StorageConfig, get_settings


def test_defaults():
    settings = get_settings()
    assert settings.port == 3001
    assert settings.ingestion_mode == "simulated"
    assert settings.mqtt_topics == ["sensors/combined"]
    assert settings.storage.high_watermark == 1000
    assert settings.storage.low_watermark == 500


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "4100")
    monkeypatch.setenv("DASHBOARD_INGESTION_MODE", "mqtt")
    monkeypatch.setenv("DASHBOARD_MQTT_URL", "mqtt://broker.local:2883")
    monkeypatch.setenv("DASHBOARD_STORAGE__BACKEND", "sql")
    settings = Settings()
    assert settings.port == 4100
    assert settings.ingestion_mode == "mqtt"
    assert (settings.mqtt_host, settings.mqtt_port) == ("broker.local", 2883)
    assert settings.storage.backend == "sql"


def test_intervals_are_clamped():
    settings = Settings(activity_interval_seconds=0, simulation={"interval_seconds": 10_000})
    assert settings.activity_interval_seconds == 0.1
    assert settings.simulation.interval_seconds == 3600.0


def test_extra_topics_deduplicated():
    settings = Settings(mqtt_extra_topics=["sensors/#", "sensors/combined"])
    assert settings.mqtt_topics == ["sensors/combined", "sensors/#"]


def test_watermarks_must_be_ordered():
    with pytest.raises(ValidationError):
        StorageConfig(high_watermark=100, low_watermark=200)
