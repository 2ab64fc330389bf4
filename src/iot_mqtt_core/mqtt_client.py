"""
MQTT connection shared by the device agent and the coordinator.

Persistent (non-clean) MQTT 3.1.1 session, QoS 2 throughout, optional last
will, bounded initial connect retries and an explicit reconnect policy.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import paho.mqtt.client as mqtt

from iot_mqtt_core.messages import PayloadError, payload_text

logger = logging.getLogger(__name__)

QOS = 2


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """
    enabled=False simulates permanent failure: an unexpected disconnect stops
    the network loop instead of reconnecting.
    """

    enabled: bool = True
    min_delay_s: float = 1.0
    max_delay_s: float = 30.0
    connect_attempts: int = 5

    @classmethod
    def from_config(cls, cfg) -> "ReconnectPolicy":
        return cls(
            enabled=cfg.reconnect_enabled,
            min_delay_s=cfg.reconnect_min_delay_s,
            max_delay_s=cfg.reconnect_max_delay_s,
            connect_attempts=cfg.connect_attempts,
        )

    def delays(self) -> Iterator[float]:
        """Backoff delays between initial connect attempts (one fewer than attempts)."""
        delay = self.min_delay_s
        for _ in range(self.connect_attempts - 1):
            yield delay
            delay = min(delay * 2, self.max_delay_s)


@dataclass(frozen=True, slots=True)
class LastWill:
    topic: str
    payload: str
    retain: bool = True


class BrokerClient:
    """
    Thin wrapper over paho's threaded client. Subclasses override the hooks:
    _on_session_ready, _on_subscribed, _on_session_lost, _handle_message and
    _before_disconnect.
    """

    def __init__(
        self,
        host: str,
        port: int,
        client_id: str,
        *,
        keepalive: int = 60,
        reconnect: Optional[ReconnectPolicy] = None,
        will: Optional[LastWill] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.reconnect = reconnect or ReconnectPolicy()
        self.will = will

        self._client: Optional[mqtt.Client] = None
        self._closing = False

    # -------------------------
    # Subclass hooks
    # -------------------------
    def _on_session_ready(self, client: mqtt.Client) -> None:
        """Called from the network thread after every successful CONNACK."""

    def _on_session_lost(self) -> None:
        """Called from the network thread after any disconnect."""

    def _on_subscribed(self, client: mqtt.Client, mid: int, ok: bool) -> None:
        """Called from the network thread when a SUBACK arrives."""

    def _handle_message(self, topic: str, payload: str) -> None:
        logger.warning("Unhandled topic: %s", topic)

    # -------------------------
    # paho callbacks
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connect failed: %s", reason_code)
            return
        logger.info("Connected to MQTT broker %s:%s as %s", self.host, self.port, self.client_id)
        self._on_session_ready(client)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        self._on_session_lost()
        if self._closing:
            logger.info("Disconnected cleanly")
            return

        logger.warning("Unexpected disconnect: %s", reason_code)
        if not self.reconnect.enabled:
            logger.error("Reconnect disabled; stopping network loop for %s", self.client_id)
            client.loop_stop()

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_codes: Any, properties: Any = None) -> None:
        failed = [rc for rc in reason_codes if rc.is_failure]
        if failed:
            logger.error("Subscription mid=%s rejected: %s", mid, failed)
        else:
            logger.info("Subscription mid=%s acknowledged", mid)
        self._on_subscribed(client, mid, not failed)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            payload_str = payload_text(msg.payload)
        except PayloadError as exc:
            logger.error("Payload decode failed topic=%s err=%s", msg.topic, exc)
            return
        logger.debug("Received %r on %s", payload_str, msg.topic)
        try:
            self._handle_message(msg.topic, payload_str)
        except Exception:
            logger.exception("Error handling message on %s", msg.topic)

    # -------------------------
    # Lifecycle
    # -------------------------
    def _create_client(self) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=False,
            protocol=mqtt.MQTTv311,
        )
        if self.will is not None:
            # Broker publishes this on our behalf if the session drops without DISCONNECT.
            client.will_set(
                self.will.topic,
                payload=self.will.payload,
                qos=QOS,
                retain=self.will.retain,
            )
            logger.info("LWT configured for %s", self.will.topic)

        client.reconnect_delay_set(
            min_delay=self.reconnect.min_delay_s,
            max_delay=self.reconnect.max_delay_s,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        return client

    def connect(self) -> bool:
        """
        Connect and start the network loop. Retries with exponential backoff
        up to reconnect.connect_attempts times; returns False if all fail.
        """
        self._closing = False
        client = self._create_client()
        delays = self.reconnect.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                client.connect(self.host, self.port, keepalive=self.keepalive)
                break
            except OSError as exc:
                delay = next(delays, None)
                if delay is None:
                    logger.error(
                        "Failed to connect to MQTT broker %s:%s after %d attempts: %s",
                        self.host, self.port, attempt, exc,
                    )
                    return False
                logger.warning(
                    "Connect attempt %d to %s:%s failed (%s); retrying in %.1fs",
                    attempt, self.host, self.port, exc, delay,
                )
                time.sleep(delay)

        self._client = client
        client.loop_start()
        return True

    def disconnect(self) -> None:
        if not self._client:
            return
        client = self._client
        self._closing = True
        try:
            self._before_disconnect(client)
            client.disconnect()
            client.loop_stop()
        finally:
            self._client = None

    def _before_disconnect(self, client: mqtt.Client) -> None:
        """Last chance to publish on the live session during disconnect()."""

    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    def subscribe(self, client: mqtt.Client, topic: str) -> int:
        """Subscribe at QoS 2; returns the message id of the SUBSCRIBE packet."""
        _rc, mid = client.subscribe(topic, qos=QOS)
        logger.info("Subscribing: %s (mid=%s)", topic, mid)
        return mid

    def publish(self, topic: str, payload: str, *, qos: int = QOS, retain: bool = False) -> Any:
        if not self._client:
            raise RuntimeError("MQTT client not connected")
        return self._client.publish(topic, payload=payload, qos=qos, retain=retain)
