"""
IoT MQTT Core entrypoint.

CLI:
  iot-mqtt-core device   -> run one simulated device (DEVICE_ID)
  iot-mqtt-core server   -> run the presence & dispatch coordinator (SERVER_ID)
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from iot_mqtt_core.config import ROLE_DEVICE, ROLE_SERVER, ConfigError, load_config, package_version
from iot_mqtt_core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    return package_version()


@dataclass
class Runtime:
    shutdown: threading.Event
    client: Optional[object] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _build_client(role: str, cfg):
    # Lazy imports keep config errors from pulling in the transport.
    if role == ROLE_DEVICE:
        from iot_mqtt_core.device import DeviceAgent

        return DeviceAgent(cfg)

    from iot_mqtt_core.server import CoordinatorClient

    return CoordinatorClient(cfg)


def run(role: str) -> int:
    """
    Connect in the given role and block until SIGINT/SIGTERM.
    Returns process exit code.
    """
    try:
        cfg = load_config(role=role)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("IoT MQTT Core (%s)", role)
    logger.info("Version: %s", cfg.version)
    logger.info("Identity: %s", cfg.device_id if role == ROLE_DEVICE else cfg.server_id)
    logger.info("Broker: %s:%s", cfg.broker_host, cfg.broker_port)
    logger.info("============================================================")

    client = _build_client(role, cfg)
    rt.client = client

    if not client.connect():
        logger.error("MQTT connection failed")
        return 1

    logger.info("Running (shutdown via SIGINT/SIGTERM)")

    try:
        while not rt.shutdown.is_set():
            rt.shutdown.wait(timeout=0.5)
    finally:
        _shutdown(rt)

    return 0


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")
    if rt.client:
        try:
            rt.client.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("MQTT disconnected")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="iot-mqtt-core")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser(ROLE_DEVICE, help="Run a simulated device agent")
    sub.add_parser(ROLE_SERVER, help="Run the presence & dispatch coordinator")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    raise SystemExit(run(args.cmd))


if __name__ == "__main__":
    main()
