from __future__ import annotations

from typing import List

import pytest

from dashboard.config import get_settings


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch, tmp_path):
    for name in ("DASHBOARD_INGESTION_MODE", "DASHBOARD_MQTT_URL", "DASHBOARD_STORAGE__BACKEND", "PORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingSession:
    """Stand-in for a WebSocket session that keeps every frame it was sent."""

    def __init__(self, session_id: str, *, fail: bool = False) -> None:
        self.session_id = session_id
        self.fail = fail
        self.frames: List[str] = []

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.frames.append(text)


@pytest.fixture
def recording_session():
    return RecordingSession
