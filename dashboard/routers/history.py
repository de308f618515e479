from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, Request

from dashboard.http_utils import dashboard_state, sensor_kind_or_404
from dashboard.services.storage import DEFAULT_LIMIT

router = APIRouter(prefix="/api")


@router.get("/history/{device_type}")
async def history(
    device_type: str,
    request: Request,
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    start_time: Optional[datetime] = Query(default=None, alias="startTime"),
    end_time: Optional[datetime] = Query(default=None, alias="endTime"),
    limit: int = Query(default=DEFAULT_LIMIT, gt=0, le=10000),
):
    kind = sensor_kind_or_404(device_type)
    state = dashboard_state(request.app)
    readings = state.sink.query_range(
        device_id=device_id,
        device_type=kind,
        start=start_time,
        end=end_time,
        limit=limit,
    )
    return [reading.to_dict() for reading in readings]


@router.get("/analytics/{device_type}")
async def analytics(
    device_type: str,
    request: Request,
    start_time: Optional[datetime] = Query(default=None, alias="startTime"),
    end_time: Optional[datetime] = Query(default=None, alias="endTime"),
):
    kind = sensor_kind_or_404(device_type)
    state = dashboard_state(request.app)
    return state.sink.hourly_averages(kind, start_time, end_time)
