"""
Telemetry/command sink.

Stands in for real persistence and command execution: store_data only logs,
execute maps a fixed command table.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

UNKNOWN_COMMAND_RESULT = "ERROR_UNKNOWN_COMMAND"

_COMMANDS = {
    "PING": "PONG",
}


class Sink(Protocol):
    """Interface the device agent and the coordinator hand payloads to."""

    def store_data(self, payload: str) -> None:
        """Persist a data or command-response payload. Must not raise."""
        ...

    def execute(self, command: str) -> str:
        """Run a command and return its result; unknown commands return a sentinel."""
        ...


class LoggingSink:
    """Sink that only logs what it would store."""

    def store_data(self, payload: str) -> None:
        logger.info("Storing data: %s", payload)

    def execute(self, command: str) -> str:
        result = _COMMANDS.get(command, UNKNOWN_COMMAND_RESULT)
        if result == UNKNOWN_COMMAND_RESULT:
            logger.warning("Unknown command: %s", command)
        return result
