"""Reading sinks: a bounded in-memory buffer and a SQL time-series table."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    MetaData,
    String,
    Table,
    and_,
    create_engine,
    func,
    literal_column,
    select,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from dashboard.config import StorageConfig
from dashboard.models import SensorKind, SensorReading, isoformat, utc_now

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
DEFAULT_LIMIT = 100
LATEST_BY_TYPE_LIMIT = 10


class StorageError(RuntimeError):
    """Raised when a sink backend fails; callers map it to a generic 500."""


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_window(
    start: Optional[datetime],
    end: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """Fill missing bounds with "last 24 hours up to now"."""

    end = _as_utc(end) if end else _as_utc(now or utc_now())
    start = _as_utc(start) if start else end - DEFAULT_WINDOW
    return start, end


def aggregate_hourly(readings: Iterable[SensorReading]) -> List[Dict[str, Any]]:
    """Group readings by hour bucket and device type, newest bucket first."""

    buckets: Dict[Tuple[datetime, str], List[float]] = defaultdict(list)
    for reading in readings:
        hour = _as_utc(reading.timestamp).replace(minute=0, second=0, microsecond=0)
        buckets[(hour, reading.device_type.value)].append(float(reading.value))
    rows = []
    for (hour, device_type), values in sorted(buckets.items(), key=lambda item: item[0], reverse=True):
        rows.append(
            {
                "hour": isoformat(hour),
                "device_type": device_type,
                "avg_value": sum(values) / len(values),
                "min_value": min(values),
                "max_value": max(values),
                "reading_count": len(values),
            }
        )
    return rows


def summarize_devices(readings: Iterable[SensorReading]) -> List[Dict[str, Any]]:
    per_type: Dict[str, Dict[str, Any]] = {}
    for reading in readings:
        key = reading.device_type.value
        entry = per_type.setdefault(
            key, {"device_type": key, "devices": set(), "reading_count": 0, "last_seen": None}
        )
        entry["devices"].add(reading.device_id)
        entry["reading_count"] += 1
        ts = _as_utc(reading.timestamp)
        if entry["last_seen"] is None or ts > entry["last_seen"]:
            entry["last_seen"] = ts
    return [
        {
            "device_type": entry["device_type"],
            "device_count": len(entry["devices"]),
            "reading_count": entry["reading_count"],
            "last_seen": isoformat(entry["last_seen"]) if entry["last_seen"] else None,
        }
        for _, entry in sorted(per_type.items())
    ]


class ReadingSink(ABC):
    """Append-only reading store. Queries never mutate stored rows."""

    @abstractmethod
    def insert(self, reading: SensorReading) -> None: ...

    @abstractmethod
    def latest_by_type(self, device_type: SensorKind, limit: int = LATEST_BY_TYPE_LIMIT) -> List[SensorReading]:
        """Most recent readings of one type, newest first."""

    @abstractmethod
    def latest_by_device(self) -> List[SensorReading]:
        """The newest reading of every device, ordered by type then id."""

    @abstractmethod
    def query_range(
        self,
        *,
        device_id: Optional[str] = None,
        device_type: Optional[SensorKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[SensorReading]:
        """Readings inside ``[start, end]``, newest first, at most ``limit``."""

    @abstractmethod
    def hourly_averages(
        self,
        device_type: SensorKind,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def device_summary(self) -> List[Dict[str, Any]]: ...

    def close(self) -> None:
        return None


class MemorySink(ReadingSink):
    """Bounded buffer with high/low watermark compaction (keep newest)."""

    def __init__(self, high_watermark: int = 1000, low_watermark: int = 500):
        if low_watermark >= high_watermark:
            raise ValueError("low_watermark must be below high_watermark")
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self._readings: List[SensorReading] = []

    def __len__(self) -> int:
        return len(self._readings)

    def insert(self, reading: SensorReading) -> None:
        self._readings.append(reading)
        if len(self._readings) > self.high_watermark:
            dropped = len(self._readings) - self.low_watermark
            self._readings = self._readings[-self.low_watermark :]
            logger.debug("Compacted memory sink, dropped %d readings", dropped)

    def latest_by_type(self, device_type: SensorKind, limit: int = LATEST_BY_TYPE_LIMIT) -> List[SensorReading]:
        matches = [reading for reading in self._readings if reading.device_type is device_type]
        return list(reversed(matches[-max(int(limit), 1) :]))

    def latest_by_device(self) -> List[SensorReading]:
        latest: Dict[str, SensorReading] = {}
        for reading in self._readings:
            latest[reading.device_id] = reading
        return sorted(latest.values(), key=lambda r: (r.device_type.value, r.device_id))

    def query_range(
        self,
        *,
        device_id: Optional[str] = None,
        device_type: Optional[SensorKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[SensorReading]:
        start, end = resolve_window(start, end)
        matches = [
            reading
            for reading in self._readings
            if (device_id is None or reading.device_id == device_id)
            and (device_type is None or reading.device_type is device_type)
            and start <= _as_utc(reading.timestamp) <= end
        ]
        matches.sort(key=lambda r: _as_utc(r.timestamp))
        return list(reversed(matches[-max(int(limit), 1) :]))

    def hourly_averages(
        self,
        device_type: SensorKind,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        start, end = resolve_window(start, end)
        return aggregate_hourly(
            reading
            for reading in self._readings
            if reading.device_type is device_type and start <= _as_utc(reading.timestamp) <= end
        )

    def device_summary(self) -> List[Dict[str, Any]]:
        return summarize_devices(self._readings)


metadata = MetaData()

readings_table = Table(
    "sensor_readings",
    metadata,
    Column("time", DateTime(timezone=True), nullable=False, index=True),
    Column("device_id", String(64), nullable=False, index=True),
    Column("device_type", String(32), nullable=False, index=True),
    Column("location", String(255), nullable=True),
    Column("value", Float, nullable=False),
    Column("unit", String(16), nullable=False),
    Column("quality", String(16), nullable=False, default="good"),
    Column("extra", JSON, nullable=True),
)


def _bucket_start(value: Any) -> datetime:
    # SQLite returns the bucket as text, PostgreSQL as a timestamp.
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return _as_utc(value)


def _row_to_reading(row: Any) -> SensorReading:
    return SensorReading(
        device_id=row.device_id,
        device_type=SensorKind(row.device_type),
        value=float(row.value),
        unit=row.unit,
        timestamp=_as_utc(row.time),
        location=row.location,
        quality=row.quality,
        extra=dict(row.extra or {}),
    )


class SqlSink(ReadingSink):
    """Readings persisted to a ``sensor_readings`` table (TimescaleDB-ready)."""

    def __init__(self, engine: Engine, *, timescale: bool = False):
        self.engine = engine
        self.hypertable = False
        try:
            metadata.create_all(engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"unable to prepare sensor_readings table: {exc}") from exc
        if timescale:
            self._create_hypertable()

    @classmethod
    def from_url(cls, url: str, *, timescale: bool = False) -> "SqlSink":
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, pool_pre_ping=True, future=True)
        logger.info("Reading sink using %s backend", parsed.get_backend_name())
        return cls(engine, timescale=timescale)

    def _create_hypertable(self) -> None:
        if self.engine.dialect.name != "postgresql":
            logger.warning("TimescaleDB requested but dialect is %s; skipping hypertable", self.engine.dialect.name)
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(text("SELECT create_hypertable('sensor_readings', 'time', if_not_exists => TRUE)"))
            self.hypertable = True
        except SQLAlchemyError as exc:
            logger.warning("Unable to create hypertable for sensor_readings: %s", exc)

    def insert(self, reading: SensorReading) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    readings_table.insert().values(
                        time=_as_utc(reading.timestamp),
                        device_id=reading.device_id,
                        device_type=reading.device_type.value,
                        location=reading.location,
                        value=float(reading.value),
                        unit=reading.unit,
                        quality=reading.quality,
                        extra=reading.extra or None,
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"insert failed for {reading.device_id}: {exc}") from exc

    def _fetch(self, statement) -> List[SensorReading]:
        try:
            with self.engine.connect() as conn:
                return [_row_to_reading(row) for row in conn.execute(statement)]
        except SQLAlchemyError as exc:
            raise StorageError(f"query failed: {exc}") from exc

    def latest_by_type(self, device_type: SensorKind, limit: int = LATEST_BY_TYPE_LIMIT) -> List[SensorReading]:
        statement = (
            select(readings_table)
            .where(readings_table.c.device_type == device_type.value)
            .order_by(readings_table.c.time.desc())
            .limit(max(int(limit), 1))
        )
        return self._fetch(statement)

    def latest_by_device(self) -> List[SensorReading]:
        newest = (
            select(readings_table.c.device_id, func.max(readings_table.c.time).label("time"))
            .group_by(readings_table.c.device_id)
            .subquery()
        )
        statement = (
            select(readings_table)
            .join(
                newest,
                and_(readings_table.c.device_id == newest.c.device_id, readings_table.c.time == newest.c.time),
            )
            .order_by(readings_table.c.device_type, readings_table.c.device_id)
        )
        return self._fetch(statement)

    def query_range(
        self,
        *,
        device_id: Optional[str] = None,
        device_type: Optional[SensorKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[SensorReading]:
        start, end = resolve_window(start, end)
        statement = select(readings_table).where(readings_table.c.time >= start, readings_table.c.time <= end)
        if device_id:
            statement = statement.where(readings_table.c.device_id == device_id)
        if device_type:
            statement = statement.where(readings_table.c.device_type == device_type.value)
        statement = statement.order_by(readings_table.c.time.desc()).limit(max(int(limit), 1))
        return self._fetch(statement)

    def hourly_averages(
        self,
        device_type: SensorKind,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        start, end = resolve_window(start, end)
        window = (
            readings_table.c.device_type == device_type.value,
            readings_table.c.time >= start,
            readings_table.c.time <= end,
        )
        bucket = self._hour_bucket()
        if bucket is None:
            return aggregate_hourly(self._fetch(select(readings_table).where(*window)))
        value = readings_table.c.value
        statement = (
            select(
                bucket.label("hour"),
                readings_table.c.device_type,
                func.avg(value).label("avg_value"),
                func.min(value).label("min_value"),
                func.max(value).label("max_value"),
                func.count().label("reading_count"),
            )
            .where(*window)
            .group_by(bucket, readings_table.c.device_type)
            .order_by(bucket.desc())
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(statement).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"hourly aggregate query failed: {exc}") from exc
        return [
            {
                "hour": isoformat(_bucket_start(row.hour)),
                "device_type": row.device_type,
                "avg_value": float(row.avg_value),
                "min_value": float(row.min_value),
                "max_value": float(row.max_value),
                "reading_count": int(row.reading_count),
            }
            for row in rows
        ]

    def _hour_bucket(self):
        """Hour-truncation expression for the engine's dialect, or None to aggregate in Python."""

        dialect = self.engine.dialect.name
        column = readings_table.c.time
        if dialect == "postgresql":
            if self.hypertable:
                return func.time_bucket(literal_column("INTERVAL '1 hour'"), column)
            return func.date_trunc(literal_column("'hour'"), column)
        if dialect == "sqlite":
            return func.strftime(literal_column("'%Y-%m-%d %H:00:00'"), column)
        return None

    def device_summary(self) -> List[Dict[str, Any]]:
        statement = (
            select(
                readings_table.c.device_type,
                func.count(func.distinct(readings_table.c.device_id)).label("device_count"),
                func.count().label("reading_count"),
                func.max(readings_table.c.time).label("last_seen"),
            )
            .group_by(readings_table.c.device_type)
            .order_by(readings_table.c.device_type)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(statement).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"summary query failed: {exc}") from exc
        return [
            {
                "device_type": row.device_type,
                "device_count": int(row.device_count),
                "reading_count": int(row.reading_count),
                "last_seen": isoformat(_as_utc(row.last_seen)) if row.last_seen else None,
            }
            for row in rows
        ]

    def close(self) -> None:
        self.engine.dispose()


def create_sink(config: StorageConfig) -> ReadingSink:
    if config.backend == "sql":
        return SqlSink.from_url(config.database_url, timescale=config.timescale)
    return MemorySink(high_watermark=config.high_watermark, low_watermark=config.low_watermark)
