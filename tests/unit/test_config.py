from __future__ import annotations

import pytest

from iot_mqtt_core.config import ConfigError, load_config, parse_broker


def test_missing_required_env_raises(mock_env, monkeypatch):
    monkeypatch.delenv("BROKER")

    with pytest.raises(ConfigError) as exc:
        load_config(dotenv_enabled=False)

    assert "Missing required environment variable: BROKER" in str(exc.value)


@pytest.mark.parametrize("key", ["DATA_TOPIC", "CMD_REQ_TOPIC", "CMD_RESP_TOPIC", "REGISTER_TOPIC"])
def test_topic_roots_required(mock_env, monkeypatch, key):
    monkeypatch.setenv(key, "")
    with pytest.raises(ConfigError, match=key):
        load_config(dotenv_enabled=False)


def test_valid_env_loads(mock_env):
    cfg = load_config(role="device", dotenv_enabled=False)

    assert cfg.broker_host == "test.mqtt.local"
    assert cfg.broker_port == 1883
    assert cfg.data_topic == "data"
    assert cfg.command_request_topic == "cmd/req"
    assert cfg.command_response_topic == "cmd/resp"
    assert cfg.register_topic == "register"
    assert cfg.device_id == "dev-1"
    assert cfg.server_id == "iot-server"
    assert cfg.telemetry_interval_s == 5.0
    assert cfg.dispatch_interval_s == 10.0
    assert cfg.dispatch_command == "PING"
    assert cfg.presence_timeout_s == 0.0
    assert cfg.reconnect_enabled is True
    assert cfg.connect_attempts == 5
    assert isinstance(cfg.version, str)
    assert cfg.version  # non-empty


def test_role_requires_identity(mock_env, monkeypatch):
    monkeypatch.delenv("DEVICE_ID")
    with pytest.raises(ConfigError, match="DEVICE_ID"):
        load_config(role="device", dotenv_enabled=False)

    # the server does not need a device id
    assert load_config(role="server", dotenv_enabled=False).device_id is None

    monkeypatch.delenv("SERVER_ID")
    with pytest.raises(ConfigError, match="SERVER_ID"):
        load_config(role="server", dotenv_enabled=False)


def test_unknown_role_raises(mock_env):
    with pytest.raises(ConfigError, match="Unknown role"):
        load_config(role="gateway", dotenv_enabled=False)


@pytest.mark.parametrize("raw,expected", [
    ("mqtt://broker:1884", ("broker", 1884)),
    ("mqtt://broker", ("broker", 1883)),
    ("tcp://10.0.0.1:1883", ("10.0.0.1", 1883)),
    ("localhost", ("localhost", 1883)),
    ("localhost:2000", ("localhost", 2000)),
])
def test_parse_broker(raw, expected):
    assert parse_broker(raw) == expected


@pytest.mark.parametrize("raw", ["http://broker", "mqtt://", "mqtt://broker:notaport", "mqtt://broker:0"])
def test_parse_broker_invalid(raw):
    with pytest.raises(ConfigError):
        parse_broker(raw)


def test_overrides(mock_env, monkeypatch):
    monkeypatch.setenv("TELEMETRY_INTERVAL", "2.5")
    monkeypatch.setenv("DISPATCH_INTERVAL", "3")
    monkeypatch.setenv("DISPATCH_COMMAND", "STATUS")
    monkeypatch.setenv("PRESENCE_TIMEOUT", "45")
    monkeypatch.setenv("RECONNECT", "off")
    monkeypatch.setenv("RECONNECT_MIN_DELAY", "2")
    monkeypatch.setenv("RECONNECT_MAX_DELAY", "8")
    monkeypatch.setenv("CONNECT_ATTEMPTS", "1")
    monkeypatch.setenv("MQTT_KEEPALIVE", "15")

    cfg = load_config(dotenv_enabled=False)

    assert cfg.telemetry_interval_s == 2.5
    assert cfg.dispatch_interval_s == 3.0
    assert cfg.dispatch_command == "STATUS"
    assert cfg.presence_timeout_s == 45.0
    assert cfg.reconnect_enabled is False
    assert cfg.reconnect_min_delay_s == 2.0
    assert cfg.reconnect_max_delay_s == 8.0
    assert cfg.connect_attempts == 1
    assert cfg.keepalive_s == 15


@pytest.mark.parametrize("key,value,message", [
    ("TELEMETRY_INTERVAL", "0", "TELEMETRY_INTERVAL must be > 0"),
    ("DISPATCH_INTERVAL", "soon", "Invalid number for DISPATCH_INTERVAL"),
    ("PRESENCE_TIMEOUT", "-1", "PRESENCE_TIMEOUT must be >= 0"),
    ("RECONNECT", "maybe", "Invalid boolean for RECONNECT"),
    ("RECONNECT_MAX_DELAY", "0.5", "RECONNECT_MAX_DELAY must be >= RECONNECT_MIN_DELAY"),
    ("CONNECT_ATTEMPTS", "0", "CONNECT_ATTEMPTS must be >= 1"),
    ("CONNECT_ATTEMPTS", "x", "Invalid integer for CONNECT_ATTEMPTS"),
    ("MQTT_KEEPALIVE", "0", "MQTT_KEEPALIVE must be >= 1"),
])
def test_invalid_values_raise(mock_env, monkeypatch, key, value, message):
    monkeypatch.setenv(key, value)
    with pytest.raises(ConfigError) as exc:
        load_config(dotenv_enabled=False)
    assert message in str(exc.value)


def test_dotenv_file_fills_missing_values(mock_env, monkeypatch, tmp_path):
    monkeypatch.delenv("BROKER")
    monkeypatch.delenv("IOT_ENV", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("BROKER=mqtt://from-dotenv:1999\nDATA_TOPIC=ignored\n")

    cfg = load_config()

    assert (cfg.broker_host, cfg.broker_port) == ("from-dotenv", 1999)
    # process env wins
    assert cfg.data_topic == "data"
    monkeypatch.delenv("BROKER")


def test_production_skips_dotenv(mock_env, monkeypatch, tmp_path):
    monkeypatch.delenv("BROKER")
    monkeypatch.setenv("IOT_ENV", "production")
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("BROKER=mqtt://from-dotenv:1999\n")

    with pytest.raises(ConfigError, match="BROKER"):
        load_config()
