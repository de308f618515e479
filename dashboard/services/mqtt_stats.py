"""Message counters kept by the MQTT bridge for the /api/mqtt endpoints."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from dashboard.models import isoformat

ACTIVE_WINDOW_SECONDS = 60.0
QUIET_WINDOW_SECONDS = 300.0


@dataclass
class _Counter:
    count: int = 0
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    def hit(self, now: float) -> None:
        self.count += 1
        self.last_seen = now


def _ts(epoch: float) -> str:
    return isoformat(datetime.fromtimestamp(epoch, tz=timezone.utc))


def activity_state(seconds_since_last: float) -> str:
    if seconds_since_last < ACTIVE_WINDOW_SECONDS:
        return "active"
    if seconds_since_last < QUIET_WINDOW_SECONDS:
        return "quiet"
    return "inactive"


class RelayStats:
    """Per-topic and per-sub-device counters since process start."""

    def __init__(self) -> None:
        self.started_at = time.time()
        self.messages_received = 0
        self.batches_ingested = 0
        self.malformed_messages = 0
        self.ignored_messages = 0
        self._topics: Dict[str, _Counter] = {}
        self._devices: Dict[str, _Counter] = {}

    def record_message(self, topic: str, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self.messages_received += 1
        counter = self._topics.get(topic)
        if counter is None:
            counter = self._topics[topic] = _Counter(first_seen=now, last_seen=now)
        counter.hit(now)

    def record_device(self, key: str, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        counter = self._devices.get(key)
        if counter is None:
            counter = self._devices[key] = _Counter(first_seen=now, last_seen=now)
        counter.hit(now)

    def message_rate(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        elapsed = max(now - self.started_at, 1.0)
        return round(self.messages_received / elapsed, 2)

    def topics(self) -> List[Dict[str, object]]:
        ordered = sorted(self._topics.items(), key=lambda item: item[1].count, reverse=True)
        return [
            {
                "topic": topic,
                "count": counter.count,
                "first_seen": _ts(counter.first_seen),
                "last_seen": _ts(counter.last_seen),
            }
            for topic, counter in ordered
        ]

    def devices(self, now: Optional[float] = None) -> List[Dict[str, object]]:
        now = time.time() if now is None else now
        ordered = sorted(self._devices.items(), key=lambda item: item[1].last_seen, reverse=True)
        return [
            {
                "device": key,
                "count": counter.count,
                "first_seen": _ts(counter.first_seen),
                "last_seen": _ts(counter.last_seen),
                "seconds_since_last": round(now - counter.last_seen, 1),
                "state": activity_state(now - counter.last_seen),
            }
            for key, counter in ordered
        ]

    def summary(self) -> Dict[str, object]:
        return {
            "messages_received": self.messages_received,
            "batches_ingested": self.batches_ingested,
            "malformed_messages": self.malformed_messages,
            "ignored_messages": self.ignored_messages,
            "messages_per_second": self.message_rate(),
            "topics": len(self._topics),
            "devices": len(self._devices),
            "since": _ts(self.started_at),
        }
