"""Fan-out of dashboard events to every connected WebSocket session."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 5.0


class PushEventName(str, Enum):
    CONNECTED = "connected"
    DEVICE_DATA = "deviceData"
    DEVICE_STATUS = "deviceStatus"
    ACTIVITY_LOG = "activityLog"
    MQTT_SENSOR_DATA = "mqttSensorData"


@dataclass(frozen=True)
class PushEvent:
    event: PushEventName
    data: Any

    def to_json(self) -> str:
        return json.dumps({"event": self.event.value, "data": self.data}, default=str)


class Session(Protocol):
    session_id: str

    async def send_text(self, text: str) -> None: ...


class WebSocketSession:
    """Adapter giving a Starlette WebSocket a stable id."""

    def __init__(self, websocket: Any, session_id: str | None = None):
        self.websocket = websocket
        self.session_id = session_id or uuid.uuid4().hex[:12]

    async def send_text(self, text: str) -> None:
        await self.websocket.send_text(text)


class Broadcaster:
    """Keeps the live session set and pushes events to all of them.

    Delivery is fire-and-forget: a session whose send fails, or does not
    finish within ``send_timeout`` seconds, is dropped and simply misses later
    messages. A stalled client therefore delays a broadcast by at most one
    timeout.
    """

    def __init__(self, send_timeout: float = DEFAULT_SEND_TIMEOUT) -> None:
        self._sessions: Dict[str, Session] = {}
        self.send_timeout = send_timeout
        self.broadcasts_sent: int = 0

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    async def connect(self, session: Session, initial: Sequence[PushEvent] = ()) -> bool:
        """Send the initial events to one session, then add it to the live set."""

        if not await self._deliver(session, [event.to_json() for event in initial]):
            return False
        self._sessions[session.session_id] = session
        logger.info("Dashboard session %s connected (%d live)", session.session_id, self.session_count)
        return True

    def disconnect(self, session: Session | str, reason: str = "closed") -> None:
        session_id = session if isinstance(session, str) else session.session_id
        if self._sessions.pop(session_id, None) is not None:
            logger.info(
                "Dashboard session %s disconnected: %s (%d live)", session_id, reason, self.session_count
            )

    async def send(self, session: Session, events: Iterable[PushEvent]) -> bool:
        return await self._deliver(session, [event.to_json() for event in events])

    async def broadcast(self, events: Sequence[PushEvent]) -> int:
        """Push ``events`` to every live session; returns how many received them.

        Payloads are serialized before the first send so every session sees
        the same state even if another update lands while sends are pending.
        """

        frames = [event.to_json() for event in events]
        self.broadcasts_sent += 1
        sessions = list(self._sessions.values())
        if not sessions or not frames:
            return 0
        results = await asyncio.gather(*(self._deliver(session, frames) for session in sessions))
        return sum(1 for ok in results if ok)

    async def _send_all(self, session: Session, frames: List[str]) -> None:
        for frame in frames:
            await session.send_text(frame)

    async def _deliver(self, session: Session, frames: List[str]) -> bool:
        try:
            await asyncio.wait_for(self._send_all(session, frames), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Dropping session %s: send did not complete within %.1fs", session.session_id, self.send_timeout
            )
            self.disconnect(session, reason="send_timeout")
            return False
        except Exception as exc:
            logger.debug("Dropping session %s after send failure: %s", session.session_id, exc)
            self.disconnect(session, reason="send_failed")
            return False
        return True

    async def close(self) -> None:
        for session_id in list(self._sessions):
            self.disconnect(session_id, reason="shutdown")
