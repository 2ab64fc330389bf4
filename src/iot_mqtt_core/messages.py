"""
Message payloads exchanged over the broker.

Register payloads are the bare strings SIGN_IN / SIGN_OUT. Everything else is
a UTF-8 JSON object using the camelCase field names devices expect.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

SIGN_IN = "SIGN_IN"
SIGN_OUT = "SIGN_OUT"

MESSAGE_TYPE_DATA = "DATA"
MESSAGE_TYPE_COMMAND_RESPONSE = "commandResp"

# Fixed reading reported by simulated devices.
SIMULATED_TEMP = 23.6
SIMULATED_LAT = 48.015722
SIMULATED_LNG = -88.625528

Payload = Union[str, bytes, bytearray]


class PayloadError(ValueError):
    """Raised when a payload cannot be decoded into the expected message."""


def payload_text(payload: Payload) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return bytes(payload).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadError(f"payload is not valid UTF-8: {exc}") from exc


def parse_presence(payload: Payload) -> str:
    """Return SIGN_IN or SIGN_OUT; anything else raises PayloadError."""
    text = payload_text(payload)
    if text in (SIGN_IN, SIGN_OUT):
        return text
    raise PayloadError(f"unexpected register payload {text!r}")


@dataclass(frozen=True, slots=True)
class Command:
    uuid: str
    command: str
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, command: str) -> "Command":
        return cls(uuid=str(uuid.uuid4()), command=command)

    @classmethod
    def from_json(cls, payload: Payload) -> "Command":
        text = payload_text(payload)
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PayloadError(f"command is not valid JSON: {exc}") from exc
        except RecursionError as exc:
            raise PayloadError("command is nested too deeply") from exc
        if not isinstance(obj, dict):
            raise PayloadError("command must be a JSON object")

        cmd_uuid = obj.get("uuid")
        name = obj.get("command")
        if not isinstance(cmd_uuid, str) or not cmd_uuid:
            raise PayloadError("command 'uuid' must be a non-empty string")
        if not isinstance(name, str) or not name:
            raise PayloadError("command 'command' must be a non-empty string")

        extra = {k: v for k, v in obj.items() if k not in ("uuid", "command")}
        return cls(uuid=cmd_uuid, command=name, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        return {"uuid": self.uuid, "command": self.command, **self.extra}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True, slots=True)
class CommandResponse:
    device_id: str
    command_result: str
    command: Command

    @classmethod
    def for_command(cls, device_id: str, command: Command, result: str) -> "CommandResponse":
        return cls(device_id=device_id, command_result=result, command=command)

    def to_dict(self) -> dict[str, Any]:
        # Echoed request fields come last, as the request sent them.
        return {
            "deviceId": self.device_id,
            "messageType": MESSAGE_TYPE_COMMAND_RESPONSE,
            "commandResult": self.command_result,
            **self.command.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True, slots=True)
class TelemetrySample:
    device_id: str
    temp: float
    lat: float
    lng: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "messageType": MESSAGE_TYPE_DATA,
            "temp": self.temp,
            "lat": self.lat,
            "lng": self.lng,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def simulated_sample(device_id: str) -> TelemetrySample:
    return TelemetrySample(
        device_id=device_id,
        temp=SIMULATED_TEMP,
        lat=SIMULATED_LAT,
        lng=SIMULATED_LNG,
    )
