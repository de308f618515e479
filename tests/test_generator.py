import random

from dashboard.models import SensorKind
from dashboard.services import generator


def test_generated_values_stay_in_bounds():
    rng = random.Random(42)
    for _ in range(2000):
        assert 121.5 <= generator.flow_rate(rng) <= 133.5
        assert 400 <= generator.orp_level(rng) <= 500
        assert 6.8 <= generator.ph_level(rng) <= 7.8
        assert 2.1 <= generator.power_consumption(rng) <= 3.4


def test_generated_values_are_rounded_per_kind():
    rng = random.Random(7)
    for _ in range(200):
        assert isinstance(generator.orp_level(rng), int)
        flow = generator.flow_rate(rng)
        assert round(flow, 1) == flow
        ph = generator.ph_level(rng)
        assert round(ph, 1) == ph


def test_generate_value_dispatches_on_kind():
    rng = random.Random(1)
    values = {kind: generator.generate_value(kind, rng) for kind in SensorKind}
    assert 100 < values[SensorKind.FLOW_RATE] < 150
    assert 6 < values[SensorKind.PH] < 9


def test_seeded_generators_repeat():
    first = [generator.flow_rate(random.Random(3)) for _ in range(3)]
    second = [generator.flow_rate(random.Random(3)) for _ in range(3)]
    assert first == second


def test_random_activity_uses_known_templates():
    rng = random.Random(5)
    known = {(t, d, m, level) for t, d, m, level in generator.ACTIVITY_TEMPLATES}
    for _ in range(50):
        entry = generator.random_activity(rng)
        assert (entry.type, entry.device, entry.message, entry.level) in known
        assert entry.id > 0
