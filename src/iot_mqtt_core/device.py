"""
Device agent: one simulated device's lifecycle against the broker.

connect -> subscribe to own command-request topic -> on SUBACK publish
SIGN_IN (retained) and start telemetry -> answer commands -> on shutdown
publish SIGN_OUT (retained) before disconnecting. The last will covers crashes.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from iot_mqtt_core.config import IoTConfig
from iot_mqtt_core.messages import (
    SIGN_IN,
    SIGN_OUT,
    Command,
    CommandResponse,
    PayloadError,
    TelemetrySample,
    simulated_sample,
)
from iot_mqtt_core.mqtt_client import BrokerClient, LastWill, ReconnectPolicy
from iot_mqtt_core.mqtt_topics import TopicSchema, validate_device_id
from iot_mqtt_core.sink import LoggingSink, Sink

logger = logging.getLogger(__name__)

SIGN_OUT_TIMEOUT_S = 5.0


class DeviceAgent(BrokerClient):
    def __init__(
        self,
        cfg: IoTConfig,
        sink: Optional[Sink] = None,
        *,
        reading: Callable[[str], TelemetrySample] = simulated_sample,
    ) -> None:
        device_id = validate_device_id(cfg.device_id or "")
        topics = TopicSchema.from_config(cfg)
        super().__init__(
            cfg.broker_host,
            cfg.broker_port,
            f"{device_id}-mqtt-client",
            keepalive=cfg.keepalive_s,
            reconnect=ReconnectPolicy.from_config(cfg),
            will=LastWill(topics.register(device_id), SIGN_OUT, retain=True),
        )
        self.device_id = device_id
        self.topics = topics
        self.sink = sink or LoggingSink()
        self.telemetry_interval_s = cfg.telemetry_interval_s
        self._reading = reading

        self._command_sub_mid: Optional[int] = None
        self._telemetry_thread: Optional[threading.Thread] = None
        self._telemetry_stop_event = threading.Event()

    # -------------------------
    # Session
    # -------------------------
    def _on_session_ready(self, client: mqtt.Client) -> None:
        # SIGN_IN waits for the SUBACK so no command sent right after presence is lost.
        self._command_sub_mid = self.subscribe(client, self.topics.command_request(self.device_id))

    def _on_subscribed(self, client: mqtt.Client, mid: int, ok: bool) -> None:
        if mid != self._command_sub_mid:
            return
        self._command_sub_mid = None
        if not ok:
            logger.error("Command subscription rejected; not announcing presence")
            return
        self._announce(client, SIGN_IN)
        self._start_telemetry()

    def _on_session_lost(self) -> None:
        self._command_sub_mid = None
        self._stop_telemetry()

    def _announce(self, client: mqtt.Client, presence: str):
        topic = self.topics.register(self.device_id)
        info = client.publish(topic, payload=presence, qos=2, retain=True)
        logger.info("Published %s to %s", presence, topic)
        return info

    def _before_disconnect(self, client: mqtt.Client) -> None:
        self._stop_telemetry()
        info = self._announce(client, SIGN_OUT)
        try:
            info.wait_for_publish(timeout=SIGN_OUT_TIMEOUT_S)
        except (RuntimeError, ValueError) as exc:
            logger.warning("SIGN_OUT not confirmed before disconnect: %s", exc)

    # -------------------------
    # Commands
    # -------------------------
    def _handle_message(self, topic: str, payload: str) -> None:
        if topic != self.topics.command_request(self.device_id):
            logger.warning("Unhandled topic: %s", topic)
            return
        self.handle_command(payload)

    def handle_command(self, payload: str) -> Optional[CommandResponse]:
        """Execute a command request and publish the response. Malformed requests are dropped."""
        logger.info("Received command %r", payload)
        try:
            command = Command.from_json(payload)
        except PayloadError as exc:
            logger.error("Dropping malformed command: %s", exc)
            return None

        result = self.sink.execute(command.command)
        response = CommandResponse.for_command(self.device_id, command, result)
        body = response.to_json()
        logger.info("Sending command response %s", body)
        self.publish(self.topics.command_response(self.device_id), body, qos=2)
        return response

    # -------------------------
    # Telemetry
    # -------------------------
    def publish_telemetry(self) -> None:
        body = self._reading(self.device_id).to_json()
        logger.info("Sending data: %s", body)
        self.publish(self.topics.data(self.device_id), body, qos=2)

    def _telemetry_loop(self) -> None:
        while not self._telemetry_stop_event.wait(timeout=self.telemetry_interval_s):
            try:
                self.publish_telemetry()
            except Exception as exc:
                logger.warning("Failed to publish telemetry: %s", exc)

    def _start_telemetry(self) -> None:
        if self._telemetry_thread:
            return
        self._telemetry_stop_event.clear()
        self._telemetry_thread = threading.Thread(
            target=self._telemetry_loop,
            name=f"telemetry-{self.device_id}",
            daemon=True,
        )
        self._telemetry_thread.start()
        logger.info("Started telemetry every %ss", self.telemetry_interval_s)

    def _stop_telemetry(self) -> None:
        if not self._telemetry_thread:
            return
        self._telemetry_stop_event.set()
        thread = self._telemetry_thread
        if thread is not threading.current_thread():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.warning("Telemetry thread did not stop within timeout")
        self._telemetry_thread = None
        logger.info("Stopped telemetry")
