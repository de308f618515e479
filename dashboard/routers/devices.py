from __future__ import annotations

from fastapi import APIRouter, Request

from dashboard.http_utils import dashboard_state, sensor_kind_or_404
from dashboard.models import UNITS, isoformat, utc_now

router = APIRouter(prefix="/api/devices")


@router.get("")
async def all_devices(request: Request):
    state = dashboard_state(request.app)
    return {
        "data": state.snapshot.to_dict(),
        "status": state.registry.to_dict(),
        "summary": state.sink.device_summary(),
        "readings": [reading.to_dict() for reading in state.sink.latest_by_device()],
        "timestamp": isoformat(utc_now()),
    }


@router.get("/{category}")
async def device_category(category: str, request: Request):
    kind = sensor_kind_or_404(category)
    state = dashboard_state(request.app)
    return {
        "value": state.snapshot.value_for(kind),
        "unit": UNITS[kind],
        "devices": state.registry.category(kind).to_dict(),
        "readings": [reading.to_dict() for reading in state.sink.latest_by_type(kind)],
        "timestamp": state.snapshot.last_update,
    }
