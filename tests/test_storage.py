from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dashboard.config import StorageConfig
from dashboard.models import SensorKind, SensorReading, utc_now
from dashboard.services.storage import MemorySink, SqlSink, aggregate_hourly, create_sink


def _reading(device_id: str, kind: SensorKind, value: float, *, at: datetime | None = None) -> SensorReading:
    return SensorReading(device_id=device_id, device_type=kind, value=value, unit="u", timestamp=at or utc_now())


def test_memory_sink_compacts_past_high_watermark():
    sink = MemorySink()
    for index in range(1000):
        sink.insert(_reading("FR001", SensorKind.FLOW_RATE, float(index)))
    assert len(sink) == 1000

    sink.insert(_reading("FR001", SensorKind.FLOW_RATE, 1000.0))
    assert len(sink) == 500

    latest = sink.latest_by_type(SensorKind.FLOW_RATE, limit=1000)
    assert latest[0].value == 1000.0
    assert min(r.value for r in latest) == 501.0


def test_memory_sink_rejects_inverted_watermarks():
    with pytest.raises(ValueError):
        MemorySink(high_watermark=10, low_watermark=10)


def test_memory_sink_queries_newest_first():
    sink = MemorySink(high_watermark=50, low_watermark=10)
    now = utc_now()
    sink.insert(_reading("PH001", SensorKind.PH, 7.0, at=now - timedelta(minutes=3)))
    sink.insert(_reading("PH002", SensorKind.PH, 7.1, at=now - timedelta(minutes=2)))
    sink.insert(_reading("ORP001", SensorKind.ORP, 450.0, at=now - timedelta(minutes=1)))
    sink.insert(_reading("PH001", SensorKind.PH, 7.2, at=now - timedelta(days=2)))

    assert [r.value for r in sink.latest_by_type(SensorKind.PH)] == [7.2, 7.1, 7.0]
    history = sink.query_range(device_type=SensorKind.PH)
    assert [r.value for r in history] == [7.1, 7.0]
    assert [r.value for r in sink.query_range(device_id="PH001")] == [7.0]
    assert len(sink.query_range(limit=1)) == 1

    latest = {r.device_id: r.value for r in sink.latest_by_device()}
    assert latest == {"ORP001": 450.0, "PH001": 7.2, "PH002": 7.1}


def test_aggregate_hourly_groups_by_hour():
    base = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
    rows = aggregate_hourly(
        [
            _reading("PM001", SensorKind.POWER, 2.0, at=base + timedelta(minutes=5)),
            _reading("PM001", SensorKind.POWER, 4.0, at=base + timedelta(minutes=50)),
            _reading("PM001", SensorKind.POWER, 3.0, at=base + timedelta(hours=1, minutes=1)),
        ]
    )
    assert [row["reading_count"] for row in rows] == [1, 2]
    assert rows[1]["avg_value"] == 3.0
    assert rows[1]["min_value"] == 2.0
    assert rows[1]["max_value"] == 4.0
    assert rows[0]["hour"] > rows[1]["hour"]


@pytest.fixture
def sql_sink(tmp_path):
    sink = SqlSink.from_url(f"sqlite:///{tmp_path / 'db' / 'readings.db'}")
    yield sink
    sink.close()


def test_sql_sink_round_trips_readings(sql_sink):
    now = utc_now().replace(microsecond=0)
    sql_sink.insert(
        SensorReading(
            device_id="ORP_01",
            device_type=SensorKind.ORP,
            value=440.0,
            unit="mV",
            timestamp=now - timedelta(minutes=2),
            location="tank-a",
            extra={"batch": 7},
        )
    )
    sql_sink.insert(_reading("ORP_02", SensorKind.ORP, 460.0, at=now - timedelta(minutes=1)))
    sql_sink.insert(_reading("PM001", SensorKind.POWER, 2.75, at=now))

    latest = sql_sink.latest_by_type(SensorKind.ORP)
    assert [r.device_id for r in latest] == ["ORP_02", "ORP_01"]
    assert latest[1].location == "tank-a"
    assert latest[1].extra == {"batch": 7}
    assert latest[1].timestamp.tzinfo is not None

    assert [r.device_id for r in sql_sink.query_range(device_type=SensorKind.ORP, limit=1)] == ["ORP_02"]
    assert {r.device_id for r in sql_sink.latest_by_device()} == {"ORP_01", "ORP_02", "PM001"}

    summary = {row["device_type"]: row for row in sql_sink.device_summary()}
    assert summary["orp"]["device_count"] == 2
    assert summary["power"]["reading_count"] == 1


def test_sql_sink_hourly_averages(sql_sink):
    now = utc_now()
    sql_sink.insert(_reading("FR001", SensorKind.FLOW_RATE, 120.0, at=now))
    sql_sink.insert(_reading("FR002", SensorKind.FLOW_RATE, 124.0, at=now))
    rows = sql_sink.hourly_averages(SensorKind.FLOW_RATE, start=now - timedelta(hours=1), end=now + timedelta(minutes=1))
    assert rows[0]["reading_count"] == 2
    assert rows[0]["avg_value"] == 122.0


def test_sql_sink_hourly_buckets_newest_first(sql_sink):
    now = utc_now()
    sql_sink.insert(_reading("PH001", SensorKind.PH, 7.0, at=now - timedelta(hours=2)))
    sql_sink.insert(_reading("PH002", SensorKind.PH, 7.4, at=now - timedelta(hours=2)))
    sql_sink.insert(_reading("PH001", SensorKind.PH, 7.1, at=now))
    sql_sink.insert(_reading("ORP001", SensorKind.ORP, 450.0, at=now))

    rows = sql_sink.hourly_averages(SensorKind.PH)

    assert [row["reading_count"] for row in rows] == [1, 2]
    assert rows[0]["hour"] > rows[1]["hour"]
    assert rows[0]["hour"].endswith(":00:00Z")
    assert rows[1]["avg_value"] == pytest.approx(7.2)
    assert rows[1]["min_value"] == 7.0
    assert rows[1]["max_value"] == 7.4
    assert {row["device_type"] for row in rows} == {"ph"}


def test_create_sink_follows_backend(tmp_path):
    assert isinstance(create_sink(StorageConfig()), MemorySink)
    sink = create_sink(StorageConfig(backend="sql", database_url=f"sqlite:///{tmp_path / 'x.db'}"))
    try:
        assert isinstance(sink, SqlSink)
    finally:
        sink.close()
