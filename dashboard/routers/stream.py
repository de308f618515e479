from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket

from dashboard.models import isoformat, utc_now
from dashboard.services.broadcaster import PushEvent, PushEventName, WebSocketSession
from dashboard.services.state import DashboardState

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def dashboard_stream(websocket: WebSocket):
    state: DashboardState = websocket.app.state.dashboard
    await websocket.accept()
    session = WebSocketSession(websocket)
    hello = PushEvent(
        PushEventName.CONNECTED,
        {"sessionId": session.session_id, "timestamp": isoformat(utc_now())},
    )
    if not await state.broadcaster.connect(session, [hello, *state.state_events()]):
        return
    reason = "closed"
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                reason = f"client closed ({message.get('code', 1000)})"
                break
            text = message.get("text")
            if text is None:
                logger.debug("Ignoring binary frame from %s", session.session_id)
                continue
            try:
                request = json.loads(text)
            except (ValueError, RecursionError):
                logger.debug("Ignoring non-JSON frame from %s", session.session_id)
                continue
            if isinstance(request, dict) and request.get("event") == "requestDeviceStatus":
                await state.broadcaster.send(session, [state.status_event()])
    finally:
        state.broadcaster.disconnect(session, reason=reason)
