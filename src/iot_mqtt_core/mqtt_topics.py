"""
MQTT topic schema for IoT MQTT Core.

Every device-scoped topic is <root>/<device_id>, one root per category:
  data              telemetry samples from a device
  command_request   commands sent to a device
  command_response  command results sent back by a device
  register          SIGN_IN / SIGN_OUT presence (retained, last will)

The coordinator subscribes to <root>/+ for data, command_response and register.
"""

from __future__ import annotations

from dataclasses import dataclass

DATA = "data"
COMMAND_REQUEST = "command_request"
COMMAND_RESPONSE = "command_response"
REGISTER = "register"

_WILDCARDS = ("+", "#")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier or topic is used."""


class UnknownTopicError(TopicSchemaError):
    """Raised when a topic prefix matches none of the configured roots."""


def validate_device_id(device_id: str) -> str:
    if not isinstance(device_id, str) or not device_id:
        raise TopicSchemaError("device_id must be a non-empty string")
    if "/" in device_id or any(w in device_id for w in _WILDCARDS):
        raise TopicSchemaError(
            f"device_id '{device_id}' is invalid; '/', '+' and '#' are not allowed"
        )
    return device_id


def _validate_root(name: str, root: str) -> str:
    if not isinstance(root, str) or not root:
        raise TopicSchemaError(f"{name} must be a non-empty string")
    if any(w in root for w in _WILDCARDS):
        raise TopicSchemaError(f"{name} '{root}' must not contain wildcards")
    if root.endswith("/"):
        raise TopicSchemaError(f"{name} '{root}' must not end with '/'")
    return root


def device_scoped_topic(root: str, device_id: str) -> str:
    return f"{root}/{validate_device_id(device_id)}"


def split_device_topic(topic: str) -> tuple[str, str]:
    """
    Split a device-scoped topic into (prefix, device_id).
    The device id is the final path segment; the prefix is everything before it.
    """
    prefix, sep, device_id = topic.rpartition("/")
    if not sep or not prefix or not device_id:
        raise TopicSchemaError(f"topic '{topic}' is not device-scoped")
    return prefix, device_id


@dataclass(frozen=True, slots=True)
class TopicSchema:
    """Category roots for one deployment; shared by devices and the coordinator."""

    data_root: str
    command_request_root: str
    command_response_root: str
    register_root: str

    def __post_init__(self) -> None:
        roots = self._roots()
        for category, root in roots.items():
            _validate_root(f"{category} root", root)
        if len(set(roots.values())) != len(roots):
            raise TopicSchemaError("topic roots must be distinct")

    @classmethod
    def from_config(cls, cfg) -> "TopicSchema":
        return cls(
            data_root=cfg.data_topic,
            command_request_root=cfg.command_request_topic,
            command_response_root=cfg.command_response_topic,
            register_root=cfg.register_topic,
        )

    def _roots(self) -> dict[str, str]:
        return {
            DATA: self.data_root,
            COMMAND_REQUEST: self.command_request_root,
            COMMAND_RESPONSE: self.command_response_root,
            REGISTER: self.register_root,
        }

    # -------------------------
    # Device-scoped topics
    # -------------------------
    def data(self, device_id: str) -> str:
        return device_scoped_topic(self.data_root, device_id)

    def command_request(self, device_id: str) -> str:
        return device_scoped_topic(self.command_request_root, device_id)

    def command_response(self, device_id: str) -> str:
        return device_scoped_topic(self.command_response_root, device_id)

    def register(self, device_id: str) -> str:
        """Presence topic (retained; also the last-will topic)"""
        return device_scoped_topic(self.register_root, device_id)

    # -------------------------
    # Coordinator side
    # -------------------------
    def subscriptions(self) -> list[str]:
        """Wildcard subscriptions for the coordinator (any device)."""
        return [
            f"{self.data_root}/+",
            f"{self.command_response_root}/+",
            f"{self.register_root}/+",
        ]

    def parse(self, topic: str) -> tuple[str, str]:
        """
        Return (category, device_id) for a device-scoped topic.

        Raises TopicSchemaError if the topic is not device-scoped and
        UnknownTopicError if the prefix matches no configured root.
        """
        prefix, device_id = split_device_topic(topic)
        for category, root in self._roots().items():
            if prefix == root:
                return category, device_id
        raise UnknownTopicError(f"no category for topic prefix '{prefix}'")
