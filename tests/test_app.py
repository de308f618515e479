from __future__ import annotations

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from dashboard import main as main_module
from dashboard.config import Settings, SimulationConfig, StorageConfig
from dashboard.models import SensorKind, SensorReading, isoformat, utc_now
from dashboard.services.storage import MemorySink, StorageError


def _settings(**overrides) -> Settings:
    values = dict(
        simulation=SimulationConfig(interval_seconds=3600),
        activity_interval_seconds=3600,
        mqtt_url="mqtt://127.0.0.1:1",
        mqtt_reconnect_seconds=3600,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def api():
    app = main_module.create_app(_settings())
    with TestClient(app) as client:
        yield client


@pytest.fixture
def mqtt_api():
    app = main_module.create_app(_settings(ingestion_mode="mqtt"))
    with TestClient(app) as client:
        yield client


def test_banner_lists_endpoints(api):
    resp = api.get("/")
    assert resp.status_code == 200
    assert resp.json()["endpoints"]["devices"] == "/api/devices"
    assert resp.headers["X-Request-ID"]


def test_health_reports_sessions_and_mode(api):
    body = api.get("/api/health").json()
    assert body["status"] == "healthy"
    assert body["connectedClients"] == 0
    assert body["ingestionMode"] == "simulated"
    assert body["mqttConnected"] is None
    assert body["process"]["rss_bytes"] > 0
    assert body["uptime"] >= 0


def test_devices_returns_seeded_snapshot(api):
    body = api.get("/api/devices").json()
    assert body["data"]["flowRate"] == 125.4
    assert body["data"]["pHLevel"] == 7.2
    assert body["status"]["orpDevices"]["active"] == 6
    assert body["summary"] == []
    assert body["readings"] == []


def test_device_category_aliases(api):
    state = api.app.state.dashboard
    state.record([SensorReading(device_id="FR001", device_type=SensorKind.FLOW_RATE, value=126.0, unit="L/h")])

    for path in ("/api/devices/flow-rate", "/api/devices/flow_rate"):
        body = api.get(path).json()
        assert body["value"] == 125.4
        assert body["unit"] == "L/h"
        assert body["devices"]["total"] == 3
        assert body["readings"][0]["device_id"] == "FR001"

    assert api.get("/api/devices/ph").json()["unit"] == "pH"
    assert api.get("/api/devices/voltage").status_code == 404


def test_history_and_analytics(api):
    state = api.app.state.dashboard
    now = utc_now()
    state.record(
        [
            SensorReading(device_id="PH001", device_type=SensorKind.PH, value=7.0, unit="pH", timestamp=now),
            SensorReading(device_id="PH002", device_type=SensorKind.PH, value=7.4, unit="pH", timestamp=now),
        ]
    )

    history = api.get("/api/history/ph", params={"deviceId": "PH002"}).json()
    assert [row["value"] for row in history] == [7.4]
    assert len(api.get("/api/history/ph", params={"limit": 1}).json()) == 1
    assert api.get("/api/history/ph", params={"limit": 0}).status_code == 422
    assert api.get("/api/history/ph", params={"startTime": "yesterday"}).status_code == 422

    rows = api.get("/api/analytics/ph").json()
    assert rows[0]["reading_count"] == 2
    assert rows[0]["avg_value"] == pytest.approx(7.2)

    start = isoformat(now - timedelta(days=3))
    end = isoformat(now - timedelta(days=2))
    assert api.get("/api/analytics/ph", params={"startTime": start, "endTime": end}).json() == []
    assert api.get("/api/analytics/unknown").status_code == 404


def test_storage_failure_is_generic_500(monkeypatch):
    class BrokenSink(MemorySink):
        def device_summary(self):
            raise StorageError("database is locked")

    monkeypatch.setattr(main_module, "create_sink", lambda config: BrokenSink())
    app = main_module.create_app(_settings())
    with TestClient(app) as client:
        resp = client.get("/api/devices")
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}


def test_mqtt_endpoints_need_bridge(api):
    assert api.get("/api/mqtt/status").status_code == 503
    resp = api.post("/api/mqtt/publish", json={"topic": "sensors/test", "message": {"a": 1}})
    assert resp.status_code == 503


def test_websocket_initial_sequence(api):
    with api.websocket_connect("/ws") as ws:
        frames = [ws.receive_json() for _ in range(3)]
        assert [frame["event"] for frame in frames] == ["connected", "deviceData", "deviceStatus"]
        assert frames[1]["data"]["flowRate"] == 125.4
        assert frames[2]["data"]["powerMeters"]["total"] == 1

        assert api.get("/api/health").json()["connectedClients"] == 1

        ws.send_text(json.dumps({"event": "requestDeviceStatus"}))
        reply = ws.receive_json()
        assert reply["event"] == "deviceStatus"
        assert reply["data"]["pHDevices"]["total"] == 6


def test_mqtt_mode_starts_offline(mqtt_api):
    body = mqtt_api.get("/api/devices").json()
    assert body["data"]["flowRate"] is None
    assert body["status"]["flowRateDevices"]["active"] == 0

    health = mqtt_api.get("/api/health").json()
    assert health["ingestionMode"] == "mqtt"
    assert health["mqttConnected"] is False

    status = mqtt_api.get("/api/mqtt/status").json()
    assert status["ingest_topic"] == "sensors/combined"
    assert status["connected"] is False

    resp = mqtt_api.post(
        "/api/mqtt/publish",
        json={"topic": "sensors/test", "message": "hello", "options": {"qos": 1, "retain": False}},
    )
    assert resp.status_code == 503
    assert mqtt_api.post("/api/mqtt/publish", json={"topic": "sensors/#"}).status_code == 422


def test_mqtt_batch_reaches_rest_and_websocket(mqtt_api):
    bridge = mqtt_api.app.state.ingestion
    payload = json.dumps(
        {
            "batch": 1,
            "timestamp": isoformat(utc_now()),
            "devices": {"power_meter_01": {"power": 2750}, "flow_rate_01": {"value": 2.0}},
        }
    ).encode()

    with mqtt_api.websocket_connect("/ws") as ws:
        for _ in range(3):
            ws.receive_json()
        assert mqtt_api.portal.call(bridge.handle_message, "sensors/combined", payload) is True
        events = [ws.receive_json()["event"] for _ in range(4)]
        assert events == ["deviceData", "deviceStatus", "mqttSensorData", "activityLog"]

    power = mqtt_api.get("/api/devices/power").json()
    assert power["value"] == 2.75
    assert power["devices"]["active"] == 1
    assert mqtt_api.get("/api/devices/orp").json()["value"] is None

    devices = {row["device"] for row in mqtt_api.get("/api/mqtt/devices").json()}
    assert devices == {"power_meter_01", "flow_rate_01"}
    topics = mqtt_api.get("/api/mqtt/topics").json()
    assert topics["topics"][0]["topic"] == "sensors/combined"


def test_configured_memory_watermarks_are_used():
    app = main_module.create_app(_settings(storage=StorageConfig(high_watermark=20, low_watermark=10)))
    with TestClient(app) as client:
        sink = client.app.state.dashboard.sink
        assert sink.high_watermark == 20
        assert sink.low_watermark == 10


def test_reconnect_without_updates_sees_same_state(api):
    def initial_frames():
        with api.websocket_connect("/ws") as ws:
            return [ws.receive_json() for _ in range(3)]

    first = initial_frames()
    second = initial_frames()

    assert first[1:] == second[1:]
    assert first[0]["data"]["sessionId"] != second[0]["data"]["sessionId"]


def test_websocket_ignores_binary_and_garbage_frames(api):
    with api.websocket_connect("/ws") as ws:
        for _ in range(3):
            ws.receive_json()
        ws.send_bytes(b"\x00\x01")
        ws.send_text("not json")
        ws.send_text(json.dumps({"event": "requestDeviceStatus"}))
        assert ws.receive_json()["event"] == "deviceStatus"
        assert api.get("/api/health").json()["connectedClients"] == 1
