"""
IoT MQTT Core configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/iot-mqtt-core/iot.env (system install)
2) ~/.config/iot-mqtt-core/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)

IOT_ENV=production skips env files altogether.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

ROLE_DEVICE = "device"
ROLE_SERVER = "server"

DEFAULT_MQTT_PORT = 1883

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("iot-mqtt-core")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/iot-mqtt-core/iot.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "iot-mqtt-core" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _optional_env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v if v else None


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _positive_float(key: str, default: str) -> float:
    value = _parse_float(key, os.getenv(key, default))
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def parse_broker(raw: str) -> tuple[str, int]:
    """
    Parse BROKER as ``mqtt://host[:port]`` or bare ``host[:port]``.
    Returns (host, port); port defaults to 1883.
    """
    text = raw.strip()
    if "://" not in text:
        text = f"mqtt://{text}"
    parts = urlsplit(text)
    if parts.scheme not in ("mqtt", "tcp"):
        raise ConfigError(f"Unsupported broker scheme: {parts.scheme!r}")
    try:
        port = parts.port
    except ValueError as exc:
        raise ConfigError(f"Invalid broker port in {raw!r}") from exc
    if not parts.hostname:
        raise ConfigError(f"Broker host missing in {raw!r}")
    if port is None:
        port = DEFAULT_MQTT_PORT
    if not (1 <= port <= 65535):
        raise ConfigError(f"Broker port out of range: {port}")
    return parts.hostname, port


@dataclass(frozen=True, slots=True)
class IoTConfig:
    broker_host: str
    broker_port: int
    data_topic: str
    command_request_topic: str
    command_response_topic: str
    register_topic: str
    device_id: Optional[str] = None
    server_id: Optional[str] = None
    telemetry_interval_s: float = 5.0
    dispatch_interval_s: float = 10.0
    dispatch_command: str = "PING"
    presence_timeout_s: float = 0.0  # 0 disables silence expiry
    reconnect_enabled: bool = True
    reconnect_min_delay_s: float = 1.0
    reconnect_max_delay_s: float = 30.0
    connect_attempts: int = 5
    keepalive_s: int = 60
    version: str = "0.0.0+dev"


def _load_env_files() -> None:
    if os.getenv("IOT_ENV", "").strip().lower() == "production":
        return

    for p in _env_paths():
        if p.is_file():
            # do not override existing env vars; later files can fill missing
            load_dotenv(p, override=False)


def load_config(*, role: Optional[str] = None, dotenv_enabled: bool = True) -> IoTConfig:
    """
    Load config by reading env files and then validating environment variables.

    role selects which identity is required: "device" needs DEVICE_ID,
    "server" needs SERVER_ID. Returns an immutable IoTConfig.
    Raises ConfigError on failure.
    """
    if role not in (None, ROLE_DEVICE, ROLE_SERVER):
        raise ConfigError(f"Unknown role: {role!r}")

    if dotenv_enabled:
        _load_env_files()

    broker_host, broker_port = parse_broker(_require_env("BROKER"))

    topics = {
        "data_topic": _require_env("DATA_TOPIC"),
        "command_request_topic": _require_env("CMD_REQ_TOPIC"),
        "command_response_topic": _require_env("CMD_RESP_TOPIC"),
        "register_topic": _require_env("REGISTER_TOPIC"),
    }

    device_id = _optional_env("DEVICE_ID")
    server_id = _optional_env("SERVER_ID")
    if role == ROLE_DEVICE and device_id is None:
        raise ConfigError("Missing required environment variable: DEVICE_ID")
    if role == ROLE_SERVER and server_id is None:
        raise ConfigError("Missing required environment variable: SERVER_ID")

    presence_timeout_s = _parse_float("PRESENCE_TIMEOUT", os.getenv("PRESENCE_TIMEOUT", "0"))
    if presence_timeout_s < 0:
        raise ConfigError("PRESENCE_TIMEOUT must be >= 0 (0 disables)")

    min_delay = _positive_float("RECONNECT_MIN_DELAY", "1")
    max_delay = _positive_float("RECONNECT_MAX_DELAY", "30")
    if max_delay < min_delay:
        raise ConfigError("RECONNECT_MAX_DELAY must be >= RECONNECT_MIN_DELAY")

    attempts = _parse_int("CONNECT_ATTEMPTS", os.getenv("CONNECT_ATTEMPTS", "5"))
    if attempts < 1:
        raise ConfigError("CONNECT_ATTEMPTS must be >= 1")

    keepalive = _parse_int("MQTT_KEEPALIVE", os.getenv("MQTT_KEEPALIVE", "60"))
    if keepalive < 1:
        raise ConfigError("MQTT_KEEPALIVE must be >= 1")

    command = os.getenv("DISPATCH_COMMAND", "PING").strip()
    if not command:
        raise ConfigError("DISPATCH_COMMAND must be non-empty")

    return IoTConfig(
        broker_host=broker_host,
        broker_port=broker_port,
        device_id=device_id,
        server_id=server_id,
        telemetry_interval_s=_positive_float("TELEMETRY_INTERVAL", "5"),
        dispatch_interval_s=_positive_float("DISPATCH_INTERVAL", "10"),
        dispatch_command=command,
        presence_timeout_s=presence_timeout_s,
        reconnect_enabled=_parse_bool("RECONNECT", os.getenv("RECONNECT", "true")),
        reconnect_min_delay_s=min_delay,
        reconnect_max_delay_s=max_delay,
        connect_attempts=attempts,
        keepalive_s=keepalive,
        version=package_version(),
        **topics,
    )
