# telemetry.py
# Fire-and-forget sinks for lifecycle and cycle events.
#
# The agent wraps every emit() so a failing sink is logged and otherwise
# ignored.

from typing import Any, Protocol

import structlog

from agent_runtime import display


class TelemetrySink(Protocol):
    def emit(self, event_name: str, payload: dict[str, Any]) -> None: ...


class LogTelemetry:
    """Writes each event to the structured log."""

    def __init__(self, logger_name: str = "agent_runtime.telemetry") -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        self._logger.info(event_name, **payload)


class ConsoleTelemetry:
    """Renders events on the terminal via display.py."""

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        display.telemetry_event(event_name, payload)


class RecordingTelemetry:
    """Keeps every event in a list. Handy for tests and notebooks."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((event_name, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]
