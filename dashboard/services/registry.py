"""Device registry: the fixed set of devices per sensor category."""
from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Sequence

from dashboard.models import CATEGORY_KEYS, DeviceCategory, DeviceRecord, DeviceStatus, SensorKind

DEFAULT_DEVICE_IDS: Dict[SensorKind, Sequence[str]] = {
    SensorKind.FLOW_RATE: ("FR001", "FR002", "FR003"),
    SensorKind.ORP: ("ORP001", "ORP002", "ORP003", "ORP004", "ORP005", "ORP006"),
    SensorKind.PH: ("PH001", "PH002", "PH003", "PH004", "PH005", "PH006"),
    SensorKind.POWER: ("PM001",),
}


class UnknownDeviceError(KeyError):
    pass


class DeviceRegistry:
    """Categories are seeded once; records are only ever mutated in place.

    ``active`` is derived from status on every read, so it always equals the
    number of operational devices in the category.
    """

    def __init__(
        self,
        initial_status: DeviceStatus = DeviceStatus.OPERATIONAL,
        device_ids: Optional[Dict[SensorKind, Sequence[str]]] = None,
    ):
        seed = device_ids if device_ids is not None else DEFAULT_DEVICE_IDS
        self._categories: Dict[SensorKind, DeviceCategory] = {
            kind: DeviceCategory(
                kind=kind,
                devices=[DeviceRecord(id=device_id, status=initial_status) for device_id in seed.get(kind, ())],
            )
            for kind in SensorKind
        }
        self._index: Dict[str, DeviceRecord] = {
            device.id: device for category in self._categories.values() for device in category.devices
        }

    def category(self, kind: SensorKind) -> DeviceCategory:
        return self._categories[kind]

    def devices(self, kind: SensorKind) -> List[DeviceRecord]:
        return self._categories[kind].devices

    def __iter__(self) -> Iterator[DeviceCategory]:
        return iter(self._categories.values())

    def get(self, device_id: str) -> DeviceRecord:
        try:
            return self._index[device_id]
        except KeyError:
            raise UnknownDeviceError(device_id) from None

    def set_reading(self, device_id: str, value: float) -> DeviceRecord:
        device = self.get(device_id)
        device.last_reading = value
        return device

    def set_status(self, device_id: str, status: DeviceStatus | str) -> DeviceRecord:
        device = self.get(device_id)
        device.status = DeviceStatus(status)
        return device

    def mark_category(self, kind: SensorKind, readings: Sequence[float], status: DeviceStatus) -> None:
        """Apply one reading per device (in seed order) and a shared status."""

        for device, value in zip(self._categories[kind].devices, readings):
            device.last_reading = value
            device.status = status

    def active_count(self, kind: SensorKind) -> int:
        return self._categories[kind].active

    def to_dict(self) -> Dict[str, object]:
        return {CATEGORY_KEYS[kind]: category.to_dict() for kind, category in self._categories.items()}
