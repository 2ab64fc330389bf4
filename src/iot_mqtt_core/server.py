"""
Coordinator process: one broker session subscribed to every device's data,
command-response and register topics.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt

from iot_mqtt_core.config import IoTConfig
from iot_mqtt_core.coordinator import Coordinator
from iot_mqtt_core.mqtt_client import BrokerClient, ReconnectPolicy
from iot_mqtt_core.mqtt_topics import TopicSchema
from iot_mqtt_core.sink import LoggingSink, Sink

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_S = 1.0


class CoordinatorClient(BrokerClient):
    """Feeds broker messages into a Coordinator and publishes its commands."""

    def __init__(self, cfg: IoTConfig, sink: Optional[Sink] = None) -> None:
        if not cfg.server_id:
            raise ValueError("server_id is required for the coordinator")
        super().__init__(
            cfg.broker_host,
            cfg.broker_port,
            cfg.server_id,
            keepalive=cfg.keepalive_s,
            reconnect=ReconnectPolicy.from_config(cfg),
        )
        self.topics = TopicSchema.from_config(cfg)
        self.coordinator = Coordinator(
            self,
            self.topics,
            sink or LoggingSink(),
            command_name=cfg.dispatch_command,
            dispatch_interval_s=cfg.dispatch_interval_s,
            presence_timeout_s=cfg.presence_timeout_s,
        )

        self._sweep_thread: Optional[threading.Thread] = None
        self._sweep_stop_event = threading.Event()

    def _on_session_ready(self, client: mqtt.Client) -> None:
        # Persistent session keeps these across reconnects; resubscribing is harmless.
        for topic in self.topics.subscriptions():
            self.subscribe(client, topic)
        if self.coordinator.presence_timeout_s > 0:
            self._start_sweeper()

    def _on_session_lost(self) -> None:
        # Retained SIGN_INs are replayed on resubscribe, so presence is rebuilt on reconnect.
        self._stop_sweeper()
        self.coordinator.stop_all()

    def _handle_message(self, topic: str, payload: str) -> None:
        logger.info("Received message %r on topic %s", payload, topic)
        self.coordinator.handle_message(topic, payload)

    def _before_disconnect(self, client: mqtt.Client) -> None:
        self._stop_sweeper()
        self.coordinator.stop_all()

    # -------------------------
    # Silence sweeper
    # -------------------------
    def _start_sweeper(self) -> None:
        if self._sweep_thread:
            return
        self._sweep_stop_event.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop,
            daemon=True,
            name="presence-sweeper",
        )
        self._sweep_thread.start()
        logger.info("Presence sweeper started (timeout %ss)", self.coordinator.presence_timeout_s)

    def _stop_sweeper(self) -> None:
        if not self._sweep_thread:
            return
        self._sweep_stop_event.set()
        self._sweep_thread.join(timeout=2.0)
        self._sweep_thread = None

    def _sweep_loop(self) -> None:
        while not self._sweep_stop_event.wait(timeout=SWEEP_INTERVAL_S):
            try:
                self.coordinator.expire_silent()
            except Exception:
                logger.exception("Presence sweep failed")
