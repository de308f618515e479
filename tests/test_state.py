from dashboard.models import DeviceStatus, SensorSnapshot
from dashboard.services.broadcaster import Broadcaster
from dashboard.services.registry import DeviceRegistry
from dashboard.services.state import DashboardState
from dashboard.services.storage import MemorySink


def test_injected_components_are_kept_even_when_empty():
    sink = MemorySink(high_watermark=20, low_watermark=10)
    registry = DeviceRegistry(device_ids={})
    broadcaster = Broadcaster()
    snapshot = SensorSnapshot()

    state = DashboardState(sink=sink, registry=registry, broadcaster=broadcaster, snapshot=snapshot)

    assert len(sink) == 0
    assert state.sink is sink
    assert state.registry is registry
    assert state.broadcaster is broadcaster
    assert state.snapshot is snapshot


def test_for_mode_keeps_configured_sink():
    sink = MemorySink(high_watermark=20, low_watermark=10)
    state = DashboardState.for_mode("mqtt", sink=sink)
    assert state.sink is sink
    assert state.sink.high_watermark == 20
    assert all(device.status is DeviceStatus.OFFLINE for category in state.registry for device in category.devices)
