"""Process-wide dashboard state, owned by one object created at startup."""
from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional

from dashboard.models import DeviceStatus, SensorKind, SensorReading, SensorSnapshot, isoformat, utc_now
from dashboard.services.broadcaster import Broadcaster, PushEvent, PushEventName
from dashboard.services.registry import DeviceRegistry
from dashboard.services.storage import MemorySink, ReadingSink, StorageError

logger = logging.getLogger(__name__)

SIMULATION_SEED_VALUES: Dict[SensorKind, float] = {
    SensorKind.FLOW_RATE: 125.4,
    SensorKind.ORP: 450,
    SensorKind.PH: 7.2,
    SensorKind.POWER: 2.4,
}


class DashboardState:
    """Snapshot, device registry, reading sink and broadcaster in one handle.

    Ingestion strategies mutate it, routers read from it; nothing else holds
    references to the individual pieces.
    """

    def __init__(
        self,
        *,
        registry: Optional[DeviceRegistry] = None,
        sink: Optional[ReadingSink] = None,
        broadcaster: Optional[Broadcaster] = None,
        snapshot: Optional[SensorSnapshot] = None,
    ):
        self.registry = registry if registry is not None else DeviceRegistry()
        self.sink = sink if sink is not None else MemorySink()
        self.broadcaster = broadcaster if broadcaster is not None else Broadcaster()
        self.snapshot = snapshot if snapshot is not None else SensorSnapshot()
        self.started_at = time.monotonic()
        self.insert_failures: int = 0

    @classmethod
    def for_mode(
        cls,
        mode: str,
        *,
        sink: Optional[ReadingSink] = None,
        broadcaster: Optional[Broadcaster] = None,
    ) -> "DashboardState":
        """Seed the way each ingestion mode expects: live defaults or all-offline."""

        if mode == "simulated":
            snapshot = SensorSnapshot()
            for kind, value in SIMULATION_SEED_VALUES.items():
                snapshot.set_value(kind, value)
            snapshot.last_update = isoformat(utc_now())
            registry = DeviceRegistry(initial_status=DeviceStatus.OPERATIONAL)
        else:
            snapshot = SensorSnapshot()
            registry = DeviceRegistry(initial_status=DeviceStatus.OFFLINE)
        return cls(registry=registry, sink=sink, broadcaster=broadcaster, snapshot=snapshot)

    @property
    def uptime_seconds(self) -> float:
        return max(time.monotonic() - self.started_at, 0.0)

    def snapshot_event(self) -> PushEvent:
        return PushEvent(PushEventName.DEVICE_DATA, self.snapshot.to_dict())

    def status_event(self) -> PushEvent:
        return PushEvent(PushEventName.DEVICE_STATUS, self.registry.to_dict())

    def state_events(self) -> List[PushEvent]:
        return [self.snapshot_event(), self.status_event()]

    def record(self, readings: Iterable[SensorReading]) -> int:
        """Append readings to the sink; failures are logged, never raised."""

        stored = 0
        for reading in readings:
            try:
                self.sink.insert(reading)
            except StorageError:
                self.insert_failures += 1
                logger.exception("Failed to store reading for %s", reading.device_id)
                continue
            stored += 1
        return stored

    async def publish(self, events: List[PushEvent]) -> int:
        return await self.broadcaster.broadcast(events)
