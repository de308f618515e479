"""In-memory domain records pushed to dashboards and served over REST."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class SensorKind(str, Enum):
    FLOW_RATE = "flow_rate"
    ORP = "orp"
    PH = "ph"
    POWER = "power"


class DeviceStatus(str, Enum):
    OPERATIONAL = "operational"
    WARNING = "warning"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


# Dashboard-facing names: snapshot field, category key, unit.
SNAPSHOT_FIELDS: Dict[SensorKind, str] = {
    SensorKind.FLOW_RATE: "flowRate",
    SensorKind.ORP: "orpLevel",
    SensorKind.PH: "pHLevel",
    SensorKind.POWER: "powerConsumption",
}
CATEGORY_KEYS: Dict[SensorKind, str] = {
    SensorKind.FLOW_RATE: "flowRateDevices",
    SensorKind.ORP: "orpDevices",
    SensorKind.PH: "pHDevices",
    SensorKind.POWER: "powerMeters",
}
UNITS: Dict[SensorKind, str] = {
    SensorKind.FLOW_RATE: "L/h",
    SensorKind.ORP: "mV",
    SensorKind.PH: "pH",
    SensorKind.POWER: "kW",
}
SENSOR_KIND_ALIASES = {
    "flow": "flow_rate",
    "flowrate": "flow_rate",
    "flow_meter": "flow_rate",
    "orp_level": "orp",
    "ph_level": "ph",
    "power_consumption": "power",
    "power_kw": "power",
    "power_meter": "power",
}


def normalize_sensor_kind(value: str | None) -> Optional[SensorKind]:
    """Map URL slugs and legacy labels (``flow-rate``, ``pH``) onto a SensorKind."""

    if not value:
        return None
    cleaned = value.strip().lower()
    cleaned = cleaned.replace("-", "_").replace(" ", "_")
    cleaned = re.sub(r"[^a-z0-9_]+", "_", cleaned).strip("_")
    cleaned = SENSOR_KIND_ALIASES.get(cleaned, cleaned)
    try:
        return SensorKind(cleaned)
    except ValueError:
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DeviceRecord:
    id: str
    status: DeviceStatus = DeviceStatus.OPERATIONAL
    last_reading: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "status": self.status.value, "lastReading": self.last_reading}


@dataclass
class DeviceCategory:
    kind: SensorKind
    devices: List[DeviceRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.devices)

    @property
    def active(self) -> int:
        return sum(1 for device in self.devices if device.status is DeviceStatus.OPERATIONAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "active": self.active,
            "devices": [device.to_dict() for device in self.devices],
        }


@dataclass
class SensorSnapshot:
    """Latest best-known value per sensor kind; one instance per process."""

    flow_rate: Optional[float] = None
    orp_level: Optional[float] = None
    ph_level: Optional[float] = None
    power_consumption: Optional[float] = None
    last_update: Optional[str] = None

    def value_for(self, kind: SensorKind) -> Optional[float]:
        return {
            SensorKind.FLOW_RATE: self.flow_rate,
            SensorKind.ORP: self.orp_level,
            SensorKind.PH: self.ph_level,
            SensorKind.POWER: self.power_consumption,
        }[kind]

    def set_value(self, kind: SensorKind, value: float) -> None:
        if kind is SensorKind.FLOW_RATE:
            self.flow_rate = value
        elif kind is SensorKind.ORP:
            self.orp_level = value
        elif kind is SensorKind.PH:
            self.ph_level = value
        else:
            self.power_consumption = value

    @property
    def has_data(self) -> bool:
        return any(self.value_for(kind) is not None for kind in SensorKind)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {SNAPSHOT_FIELDS[kind]: self.value_for(kind) for kind in SensorKind}
        payload["lastUpdate"] = self.last_update
        return payload


@dataclass
class SensorReading:
    device_id: str
    device_type: SensorKind
    value: float
    unit: str
    timestamp: datetime = field(default_factory=utc_now)
    location: Optional[str] = None
    quality: str = "good"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_type": self.device_type.value,
            "location": self.location,
            "value": self.value,
            "unit": self.unit,
            "quality": self.quality,
            "timestamp": isoformat(self.timestamp),
            "extra": dict(self.extra),
        }


@dataclass
class ActivityLogEntry:
    type: str
    device: str
    message: str
    level: str = "info"
    timestamp: datetime = field(default_factory=utc_now)
    id: int = 0

    def __post_init__(self) -> None:
        if not self.id:
            self.id = int(self.timestamp.timestamp() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "device": self.device,
            "message": self.message,
            "level": self.level,
            "timestamp": isoformat(self.timestamp),
            "id": self.id,
        }
