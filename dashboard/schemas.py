from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PublishOptions(BaseModel):
    qos: int = Field(default=0, ge=0, le=2)
    retain: bool = False


class MqttPublishRequest(BaseModel):
    topic: str
    message: Any = None
    options: PublishOptions = Field(default_factory=PublishOptions)

    @field_validator("topic")
    @classmethod
    def _validate_topic(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("topic is required")
        if "+" in cleaned or "#" in cleaned:
            raise ValueError("wildcards are not allowed when publishing")
        return cleaned

    def payload_bytes(self) -> bytes:
        """Strings go out verbatim, anything else JSON-encoded."""

        if isinstance(self.message, str):
            return self.message.encode("utf-8")
        if isinstance(self.message, (bytes, bytearray)):
            return bytes(self.message)
        return json.dumps(self.message).encode("utf-8")
