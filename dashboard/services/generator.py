"""Bounded random readings for the simulated ingestion mode."""
from __future__ import annotations

import math
import random
from typing import Callable, Dict, Optional

from dashboard.models import ActivityLogEntry, SensorKind

_default_random = random.Random()

ACTIVITY_TEMPLATES = (
    ("flowRate", "FR001", "Normal operation resumed", "info"),
    ("flowRate", "FR002", "Calibration completed", "success"),
    ("orp", "ORP003", "Calibration completed", "success"),
    ("orp", "ORP001", "Reading stabilized", "info"),
    ("pH", "PH005", "Reading within normal range", "info"),
    ("pH", "PH002", "Auto-calibration initiated", "warning"),
    ("power", "PM001", "Monthly report generated", "info"),
    ("power", "PM001", "Load spike detected", "warning"),
)


def _draw(rng: Optional[random.Random], base: float, variation: float, noise: float) -> float:
    rng = rng or _default_random
    return base + (rng.random() - 0.5) * 2 * variation + (rng.random() - 0.5) * 2 * noise


def flow_rate(rng: Optional[random.Random] = None) -> float:
    """Flow rate in L/h around 127.5 (±5 variation, ±1 noise)."""

    return round(_draw(rng, 127.5, 5.0, 1.0), 1)


def orp_level(rng: Optional[random.Random] = None) -> int:
    """ORP in mV around 450 (±40 variation, ±10 noise), floored."""

    return int(math.floor(_draw(rng, 450.0, 40.0, 10.0)))


def ph_level(rng: Optional[random.Random] = None) -> float:
    """pH around 7.3 (±0.4 variation, ±0.1 noise)."""

    return round(_draw(rng, 7.3, 0.4, 0.1), 1)


def power_consumption(rng: Optional[random.Random] = None) -> float:
    """Power draw in kW around 2.75 (±0.5 variation, ±0.15 noise)."""

    return round(_draw(rng, 2.75, 0.5, 0.15), 1)


GENERATORS: Dict[SensorKind, Callable[[Optional[random.Random]], float]] = {
    SensorKind.FLOW_RATE: flow_rate,
    SensorKind.ORP: orp_level,
    SensorKind.PH: ph_level,
    SensorKind.POWER: power_consumption,
}


def generate_value(kind: SensorKind, rng: Optional[random.Random] = None) -> float:
    return GENERATORS[kind](rng)


def random_activity(rng: Optional[random.Random] = None) -> ActivityLogEntry:
    rng = rng or _default_random
    type_, device, message, level = rng.choice(ACTIVITY_TEMPLATES)
    return ActivityLogEntry(type=type_, device=device, message=message, level=level)
