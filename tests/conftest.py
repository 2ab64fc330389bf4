"""
Pytest configuration and shared fixtures
"""
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from iot_mqtt_core.config import IoTConfig  # noqa: E402
from iot_mqtt_core.mqtt_topics import TopicSchema  # noqa: E402


class RecordingPublisher:
    """Collects publish() calls instead of talking to a broker."""

    def __init__(self):
        self.published = []

    def publish(self, topic, payload, *, qos=2, retain=False):
        self.published.append((topic, payload, qos, retain))


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.stored = []
        self.fail = fail

    def store_data(self, payload):
        if self.fail:
            raise RuntimeError("sink down")
        self.stored.append(payload)

    def execute(self, command):
        return "PONG" if command == "PING" else "ERROR_UNKNOWN_COMMAND"


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'BROKER': 'mqtt://test.mqtt.local:1883',
        'DATA_TOPIC': 'data',
        'CMD_REQ_TOPIC': 'cmd/req',
        'CMD_RESP_TOPIC': 'cmd/resp',
        'REGISTER_TOPIC': 'register',
        'DEVICE_ID': 'dev-1',
        'SERVER_ID': 'iot-server',
    }
    for key in (
        'TELEMETRY_INTERVAL', 'DISPATCH_INTERVAL', 'DISPATCH_COMMAND',
        'PRESENCE_TIMEOUT', 'RECONNECT', 'RECONNECT_MIN_DELAY',
        'RECONNECT_MAX_DELAY', 'CONNECT_ATTEMPTS', 'MQTT_KEEPALIVE',
    ):
        monkeypatch.delenv(key, raising=False)

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def config():
    return IoTConfig(
        broker_host="localhost",
        broker_port=1883,
        data_topic="data",
        command_request_topic="cmd/req",
        command_response_topic="cmd/resp",
        register_topic="register",
        device_id="dev-1",
        server_id="iot-server",
        telemetry_interval_s=5.0,
        dispatch_interval_s=10.0,
        connect_attempts=3,
        reconnect_min_delay_s=1.0,
        reconnect_max_delay_s=4.0,
    )


@pytest.fixture
def topics():
    return TopicSchema(
        data_root="data",
        command_request_root="cmd/req",
        command_response_root="cmd/resp",
        register_root="register",
    )


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    Constructor arguments are recorded on fake.ctor_args / fake.ctor_kwargs.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.subscribe.return_value = (0, 7)  # (rc, mid)

    def _ctor(*args, **kwargs):
        fake.ctor_args = args
        fake.ctor_kwargs = kwargs
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr("iot_mqtt_core.mqtt_client.time.sleep", lambda s: sleeps.append(s))
    return sleeps


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def failing_sink():
    return RecordingSink(fail=True)
