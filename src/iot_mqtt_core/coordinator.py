"""
Presence & dispatch coordinator.

Keeps the table of online devices (device id -> DispatchTimer) and routes
incoming device messages. Transport-agnostic: commands go out through any
object with publish(topic, payload, *, qos, retain).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

from iot_mqtt_core.messages import SIGN_IN, Command, Payload, PayloadError, parse_presence, payload_text
from iot_mqtt_core.mqtt_topics import (
    COMMAND_RESPONSE,
    DATA,
    REGISTER,
    TopicSchema,
    TopicSchemaError,
    UnknownTopicError,
)
from iot_mqtt_core.sink import Sink

logger = logging.getLogger(__name__)


class MqttPublisher(Protocol):
    def publish(self, topic: str, payload: str, *, qos: int = 2, retain: bool = False) -> Any: ...


class DispatchTimer:
    """
    Periodic command emitter for one device.

    tick() and cancel() share a lock: once cancel() returns, send is never
    called again, even if the loop had already woken up for a tick.
    """

    def __init__(self, device_id: str, interval_s: float, send: Callable[[str], None]) -> None:
        self.device_id = device_id
        self.interval_s = interval_s
        self._send = send
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self._thread:
            return
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"dispatch-{self.device_id}",
        )
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self.interval_s):
            self.tick()

    def tick(self) -> bool:
        """Send one command unless cancelled. Returns whether a command was sent."""
        with self._lock:
            if self._stop_event.is_set():
                return False
            try:
                self._send(self.device_id)
            except Exception as exc:
                logger.error("Dispatch to %s failed: %s", self.device_id, exc)
                return False
            return True

    def cancel(self) -> None:
        with self._lock:
            self._stop_event.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.warning("Dispatch thread for %s did not stop within timeout", self.device_id)


TimerFactory = Callable[[str, float, Callable[[str], None]], DispatchTimer]


class Coordinator:
    """
    Owns the presence table. At most one DispatchTimer per device id; a device
    is online iff it has an entry.
    """

    def __init__(
        self,
        publisher: MqttPublisher,
        topics: TopicSchema,
        sink: Sink,
        *,
        command_name: str = "PING",
        dispatch_interval_s: float = 10.0,
        presence_timeout_s: float = 0.0,
        timer_factory: TimerFactory = DispatchTimer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.publisher = publisher
        self.topics = topics
        self.sink = sink
        self.command_name = command_name
        self.dispatch_interval_s = dispatch_interval_s
        self.presence_timeout_s = presence_timeout_s
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.Lock()
        self._timers: dict[str, DispatchTimer] = {}
        self._last_seen: dict[str, float] = {}
        # Expired for silence; the next non-register message brings them back.
        self._expired: set[str] = set()

    # -------------------------
    # Presence view
    # -------------------------
    def online_devices(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def is_online(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._timers

    # -------------------------
    # Dispatch table
    # -------------------------
    def start_dispatch(self, device_id: str) -> bool:
        """Start the dispatch loop for device_id. No-op if one is already running."""
        with self._lock:
            if device_id in self._timers:
                logger.debug("Dispatch already running for %s", device_id)
                return False
            timer = self._timer_factory(device_id, self.dispatch_interval_s, self._send_command)
            self._timers[device_id] = timer
            self._expired.discard(device_id)
            self._last_seen[device_id] = self._clock()
            timer.start()
        logger.info("Device %s online; dispatching every %ss", device_id, self.dispatch_interval_s)
        return True

    def stop_dispatch(self, device_id: str) -> bool:
        """Stop the dispatch loop for device_id. No-op if none is running."""
        with self._lock:
            timer = self._timers.pop(device_id, None)
            self._last_seen.pop(device_id, None)
            self._expired.discard(device_id)
        if timer is None:
            logger.info("Device %s signed out but was not online", device_id)
            return False
        timer.cancel()
        logger.info("Device %s offline; dispatch stopped", device_id)
        return True

    def stop_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._last_seen.clear()
            self._expired.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            logger.info("Stopped %d dispatch loops", len(timers))

    def _send_command(self, device_id: str) -> None:
        command = Command.new(self.command_name)
        payload = command.to_json()
        logger.info("Sending command to %s: %s", device_id, payload)
        self.publisher.publish(self.topics.command_request(device_id), payload, qos=2, retain=False)

    # -------------------------
    # Silence expiry
    # -------------------------
    def _touch(self, device_id: str) -> None:
        with self._lock:
            if device_id in self._last_seen:
                self._last_seen[device_id] = self._clock()

    def _is_expired(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._expired

    def expire_silent(self, now: Optional[float] = None) -> list[str]:
        """
        Stop dispatch for online devices silent longer than presence_timeout_s.
        An expired device is revived by its next data or command-response
        message; a SIGN_OUT clears it for good.
        Returns the expired device ids. Does nothing when the timeout is 0.
        """
        if self.presence_timeout_s <= 0:
            return []
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [
                device_id
                for device_id, seen in self._last_seen.items()
                if now - seen > self.presence_timeout_s
            ]
        for device_id in expired:
            logger.warning("Device %s silent for more than %ss; marking offline", device_id, self.presence_timeout_s)
            self.stop_dispatch(device_id)
            with self._lock:
                self._expired.add(device_id)
        return expired

    # -------------------------
    # Routing
    # -------------------------
    def handle_message(self, topic: str, payload: Payload) -> None:
        """Route one message. Never raises; bad messages are logged and dropped."""
        try:
            category, device_id = self.topics.parse(topic)
        except UnknownTopicError:
            logger.error("Data received from unknown topic %s", topic)
            return
        except TopicSchemaError as exc:
            logger.warning("Dropping message on unparseable topic %s: %s", topic, exc)
            return

        try:
            text = payload_text(payload)
        except PayloadError as exc:
            logger.error("Dropping message from %s: %s", device_id, exc)
            return

        self._touch(device_id)
        if category != REGISTER and self._is_expired(device_id):
            logger.info("Device %s active again after silence", device_id)
            self.start_dispatch(device_id)

        if category in (DATA, COMMAND_RESPONSE):
            self._store(text)
        elif category == REGISTER:
            self._handle_presence(device_id, text)
        else:
            # Command requests are ours; we never subscribe to them.
            logger.error("Unexpected %s message for %s on %s", category, device_id, topic)

    def _handle_presence(self, device_id: str, text: str) -> None:
        try:
            presence = parse_presence(text)
        except PayloadError as exc:
            logger.error("Invalid presence from %s: %s", device_id, exc)
            return
        if presence == SIGN_IN:
            self.start_dispatch(device_id)
        else:
            self.stop_dispatch(device_id)

    def _store(self, text: str) -> None:
        try:
            self.sink.store_data(text)
        except Exception:
            logger.exception("Sink failed to store data")
