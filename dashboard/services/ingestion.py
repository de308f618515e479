"""Ingestion strategies feeding the dashboard state: simulator or MQTT bridge."""
from __future__ import annotations

import asyncio
import json
import logging
import math
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from aiomqtt import Client, MqttError

from dashboard.config import Settings
from dashboard.models import (
    UNITS,
    ActivityLogEntry,
    DeviceStatus,
    SensorKind,
    SensorReading,
    isoformat,
    utc_now,
)
from dashboard.services.broadcaster import PushEvent, PushEventName
from dashboard.services.generator import generate_value, random_activity
from dashboard.services.mqtt_stats import RelayStats
from dashboard.services.state import DashboardState

logger = logging.getLogger(__name__)


class PayloadError(ValueError):
    """The inbound message is not a usable combined sensor batch."""


class BridgeUnavailableError(RuntimeError):
    """The MQTT client is not connected (or the bridge is not running)."""


@dataclass(frozen=True)
class SubDevice:
    kind: SensorKind
    value_key: str
    factor: float
    source_unit: str


# Known keys inside ``devices`` of a combined batch and how to convert them.
SUB_DEVICES: Dict[str, SubDevice] = {
    "power_meter_01": SubDevice(SensorKind.POWER, "power", 1 / 1000, "W"),
    "flow_rate_01": SubDevice(SensorKind.FLOW_RATE, "value", 60.0, "L/min"),
    "ORP_01": SubDevice(SensorKind.ORP, "value", 1.0, "mV"),
    "ORP_02": SubDevice(SensorKind.ORP, "value", 1.0, "mV"),
    "pH_01": SubDevice(SensorKind.PH, "value", 1.0, "pH"),
    "pH_02": SubDevice(SensorKind.PH, "value", 1.0, "pH"),
}
SNAPSHOT_PRECISION: Dict[SensorKind, int] = {
    SensorKind.POWER: 2,
    SensorKind.FLOW_RATE: 1,
    SensorKind.ORP: 1,
    SensorKind.PH: 2,
}
# Synthetic per-device spread: device N reads value + N * offset.
DEVICE_OFFSETS: Dict[SensorKind, float] = {
    SensorKind.POWER: 0.0,
    SensorKind.FLOW_RATE: 2.0,
    SensorKind.ORP: 5.0,
    SensorKind.PH: 0.1,
}
_ENTRY_RESERVED = {"value", "power", "unit", "location", "quality"}


@dataclass
class CombinedBatch:
    devices: Dict[str, Any]
    batch: Any = None
    timestamp: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            seconds = value / 1000.0 if value > 1e11 else float(value)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_combined_batch(payload: bytes | bytearray | str) -> CombinedBatch:
    if isinstance(payload, (bytes, bytearray)):
        text = payload.decode("utf-8", errors="replace")
    elif isinstance(payload, str):
        text = payload
    else:
        raise PayloadError(f"unsupported payload type {type(payload).__name__}")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PayloadError(f"invalid JSON: {exc.msg}") from exc
    except (ValueError, RecursionError) as exc:
        raise PayloadError(f"unreadable JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadError("batch must be a JSON object")
    devices = data.get("devices")
    if not isinstance(devices, dict) or not devices:
        raise PayloadError("batch has no devices map")
    return CombinedBatch(
        devices=devices,
        batch=data.get("batch"),
        timestamp=_parse_timestamp(data.get("timestamp")),
        raw=data,
    )


def _numeric(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def extract_readings(batch: CombinedBatch) -> Tuple[Dict[SensorKind, List[float]], List[SensorReading]]:
    """Convert known sub-device entries; unknown or unusable entries are skipped."""

    values: Dict[SensorKind, List[float]] = {}
    readings: List[SensorReading] = []
    taken_at = batch.timestamp or utc_now()
    for key, entry in batch.devices.items():
        spec = SUB_DEVICES.get(key)
        if spec is None:
            logger.debug("Ignoring unknown sub-device %s", key)
            continue
        if not isinstance(entry, dict):
            logger.debug("Ignoring non-object entry for %s", key)
            continue
        raw_value = _numeric(entry.get(spec.value_key))
        if raw_value is None:
            logger.debug("Ignoring %s without numeric %s", key, spec.value_key)
            continue
        converted = raw_value * spec.factor
        values.setdefault(spec.kind, []).append(converted)
        extra = {name: item for name, item in entry.items() if name not in _ENTRY_RESERVED}
        extra["source_value"] = raw_value
        extra["source_unit"] = entry.get("unit") or spec.source_unit
        if batch.batch is not None:
            extra["batch"] = batch.batch
        readings.append(
            SensorReading(
                device_id=key,
                device_type=spec.kind,
                value=round(converted, 4),
                unit=UNITS[spec.kind],
                timestamp=taken_at,
                location=entry.get("location"),
                quality=str(entry.get("quality") or "good"),
                extra=extra,
            )
        )
    return values, readings


def apply_batch(state: DashboardState, batch: CombinedBatch) -> List[SensorKind]:
    """Fold one combined batch into snapshot, registry and sink.

    Returns the sensor kinds that changed; an empty list means nothing in the
    batch was recognised and no state was touched.
    """

    values, readings = extract_readings(batch)
    if not values:
        return []
    for kind, samples in values.items():
        value = round(sum(samples) / len(samples), SNAPSHOT_PRECISION[kind])
        state.snapshot.set_value(kind, value)
        offset = DEVICE_OFFSETS[kind]
        per_device = [
            round(value + index * offset, SNAPSHOT_PRECISION[kind])
            for index in range(len(state.registry.devices(kind)))
        ]
        state.registry.mark_category(kind, per_device, DeviceStatus.OPERATIONAL)
    state.snapshot.last_update = isoformat(batch.timestamp or utc_now())
    state.record(readings)
    return list(values)


def summary_activity(state: DashboardState) -> ActivityLogEntry:
    snap = state.snapshot
    return ActivityLogEntry(
        type="system",
        device="MQTT001",
        message=(
            f"Sensor data updated - Flow: {snap.flow_rate}L/h, ORP: {snap.orp_level}mV, "
            f"pH: {snap.ph_level}, Power: {snap.power_consumption}kW"
        ),
        level="info",
    )


class IngestionStrategy(ABC):
    """Source of readings; exactly one runs per process."""

    mode: str = ""

    def __init__(self, state: DashboardState, settings: Settings):
        self.state = state
        self.settings = settings
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"{self.mode}-ingestion")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @abstractmethod
    async def _run(self) -> None: ...

    def activity_entry(self) -> Optional[ActivityLogEntry]:
        return None

    def status(self) -> Dict[str, object]:
        return {"mode": self.mode, "running": bool(self._task and not self._task.done())}


class SimulatedIngestion(IngestionStrategy):
    """Regenerates every value on a fixed tick and broadcasts the full state."""

    mode = "simulated"

    def __init__(self, state: DashboardState, settings: Settings, rng: random.Random | None = None):
        super().__init__(state, settings)
        seed = settings.simulation.seed
        self.random = rng or (random.Random(seed) if seed is not None else random.Random())

    async def _run(self) -> None:
        interval = self.settings.simulation.interval_seconds
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception:
                logger.exception("Simulation tick failed")

    def generate(self) -> List[SensorReading]:
        now = utc_now()
        snapshot = self.state.snapshot
        for kind in SensorKind:
            snapshot.set_value(kind, generate_value(kind, self.random))
        snapshot.last_update = isoformat(now)
        readings: List[SensorReading] = []
        for category in self.state.registry:
            for device in category.devices:
                device.last_reading = generate_value(category.kind, self.random)
                readings.append(
                    SensorReading(
                        device_id=device.id,
                        device_type=category.kind,
                        value=device.last_reading,
                        unit=UNITS[category.kind],
                        timestamp=now,
                        quality="simulated",
                    )
                )
        return readings

    async def tick(self) -> int:
        readings = self.generate()
        self.state.record(readings)
        return await self.state.publish(self.state.state_events())

    def activity_entry(self) -> Optional[ActivityLogEntry]:
        return random_activity(self.random)


class MqttIngestion(IngestionStrategy):
    """Subscribe to the combined sensor topic and relay batches to dashboards."""

    mode = "mqtt"

    def __init__(self, state: DashboardState, settings: Settings):
        super().__init__(state, settings)
        self.stats = RelayStats()
        self.client_id = f"{settings.mqtt_client_id_prefix}-{uuid.uuid4().hex[:8]}"
        self._client: Client | None = None
        self.connected: bool = False
        self.connected_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.reconnects: int = 0

    async def _run(self) -> None:
        retry_delay = self.settings.mqtt_reconnect_seconds
        while not self._stop.is_set():
            try:
                async with Client(
                    self.settings.mqtt_host,
                    port=self.settings.mqtt_port,
                    username=self.settings.mqtt_username,
                    password=self.settings.mqtt_password,
                    identifier=self.client_id,
                    keepalive=self.settings.mqtt_keepalive_seconds,
                    timeout=self.settings.mqtt_connect_timeout_seconds,
                ) as client:
                    self._client = client
                    self.connected = True
                    self.connected_at = utc_now()
                    logger.info(
                        "Connected to MQTT broker %s:%s as %s",
                        self.settings.mqtt_host,
                        self.settings.mqtt_port,
                        self.client_id,
                    )
                    await self._listen(client)
            except asyncio.CancelledError:
                raise
            except MqttError as exc:
                self.last_error = str(exc)
                logger.warning("MQTT bridge error: %s; reconnecting in %.1fs", exc, retry_delay)
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Unhandled error in MQTT bridge")
            finally:
                self._client = None
                if self.connected:
                    logger.info("MQTT bridge offline - will attempt to reconnect")
                self.connected = False
            if self._stop.is_set():
                break
            self.reconnects += 1
            await asyncio.sleep(retry_delay)

    async def _listen(self, client: Client) -> None:
        for topic in self.settings.mqtt_topics:
            await client.subscribe(topic, qos=self.settings.mqtt_qos)
            logger.info("Subscribed to %s (qos %d)", topic, self.settings.mqtt_qos)
        async for message in client.messages:
            topic = getattr(message.topic, "value", None)
            if topic is None:
                topic = str(message.topic)
            try:
                await self.handle_message(topic, message.payload)
            except Exception:
                logger.exception("Failed to process message on %s", topic)

    async def handle_message(self, topic: str, payload: Any) -> bool:
        """Process one broker message; True when a batch was ingested and broadcast."""

        self.stats.record_message(topic)
        if topic != self.settings.mqtt_topic:
            self.stats.ignored_messages += 1
            logger.debug("Ignoring topic %s (only %s is ingested)", topic, self.settings.mqtt_topic)
            return False
        try:
            batch = parse_combined_batch(payload)
        except PayloadError as exc:
            self.stats.malformed_messages += 1
            logger.warning("Dropping malformed message on %s: %s", topic, exc)
            return False
        for key in batch.devices:
            if key in SUB_DEVICES:
                self.stats.record_device(key)
        updated = apply_batch(self.state, batch)
        if not updated:
            self.stats.ignored_messages += 1
            logger.debug("Batch %s on %s carried no recognised readings", batch.batch, topic)
            return False
        self.stats.batches_ingested += 1
        activity = summary_activity(self.state)
        events = self.state.state_events() + [
            PushEvent(
                PushEventName.MQTT_SENSOR_DATA,
                {"topic": topic, "payload": batch.raw, "timestamp": isoformat(utc_now())},
            ),
            PushEvent(PushEventName.ACTIVITY_LOG, activity.to_dict()),
        ]
        await self.state.publish(events)
        snap = self.state.snapshot
        logger.info(
            "Batch %s ingested: flow=%sL/h orp=%smV ph=%s power=%skW",
            batch.batch,
            snap.flow_rate,
            snap.orp_level,
            snap.ph_level,
            snap.power_consumption,
        )
        return True

    async def publish(self, topic: str, payload: bytes, *, qos: int = 0, retain: bool = False) -> None:
        client = self._client
        if client is None or not self.connected:
            raise BridgeUnavailableError("MQTT client is not connected")
        try:
            await client.publish(topic, payload=payload, qos=qos, retain=retain)
        except MqttError as exc:
            raise BridgeUnavailableError(str(exc)) from exc
        logger.info("Published %d bytes to %s", len(payload), topic)

    def activity_entry(self) -> Optional[ActivityLogEntry]:
        if not self.state.snapshot.has_data:
            return None
        return summary_activity(self.state)

    def status(self) -> Dict[str, object]:
        payload = super().status()
        payload.update(
            {
                "broker": f"{self.settings.mqtt_host}:{self.settings.mqtt_port}",
                "client_id": self.client_id,
                "connected": self.connected,
                "connected_at": isoformat(self.connected_at) if self.connected_at else None,
                "topics": self.settings.mqtt_topics,
                "ingest_topic": self.settings.mqtt_topic,
                "reconnects": self.reconnects,
                "last_error": self.last_error,
                "stats": self.stats.summary(),
            }
        )
        return payload


class ActivityTicker:
    """Emit an activity-log entry on a fixed cadence, independent of data changes."""

    def __init__(self, state: DashboardState, source: IngestionStrategy, interval_seconds: float):
        self.state = state
        self.source = source
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="activity-ticker")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.emit()
            except Exception:
                logger.exception("Activity ticker failed")

    async def emit(self) -> Optional[ActivityLogEntry]:
        entry = self.source.activity_entry()
        if entry is None:
            return None
        await self.state.publish([PushEvent(PushEventName.ACTIVITY_LOG, entry.to_dict())])
        return entry


def create_ingestion(settings: Settings, state: DashboardState) -> IngestionStrategy:
    if settings.ingestion_mode == "mqtt":
        return MqttIngestion(state, settings)
    return SimulatedIngestion(state, settings)
