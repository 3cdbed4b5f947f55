"""
telemetry.py - Event sinks and the buffering listener that feeds them.

A sink is any object with ``name``, ``initialize()``, ``submit_events(events)
-> bool`` and ``shutdown()``. The TelemetryListener subscribes to a run's
EventBus, buffers serialized events and submits them in batches; terminal
flow events force a flush. Sinks are injected per Flow, never global.

Usage:
    from stepflow.runtime.telemetry import LoggingSink, TelemetryListener

    sink = LoggingSink()
    sink.initialize()
    bus.subscribe(TelemetryListener(sink, batch_size=20))
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .types import FlowEvent, run_event_to_dict

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


@runtime_checkable
class EventSink(Protocol):
    """Transport for serialized events."""

    name: str

    def initialize(self) -> None: ...

    def submit_events(self, events: Sequence[Dict[str, Any]]) -> bool: ...

    def shutdown(self) -> None: ...


class NoopSink:
    """Disabled telemetry: accepts everything, keeps nothing."""

    name = "noop"

    def initialize(self) -> None:
        pass

    def submit_events(self, events: Sequence[Dict[str, Any]]) -> bool:
        return True

    def shutdown(self) -> None:
        pass


class LoggingSink:
    """Writes each submitted event to a logger."""

    name = "logging"

    def __init__(self, logger_name: str = "stepflow.telemetry", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level
        self.submitted = 0

    def initialize(self) -> None:
        self.submitted = 0

    def submit_events(self, events: Sequence[Dict[str, Any]]) -> bool:
        for event in events:
            self._logger.log(
                self._level,
                "[%s] #%s %s%s rev=%s",
                event.get("run_id"),
                event.get("seq"),
                event.get("kind"),
                f" step={event['step_name']}" if event.get("step_name") else "",
                event.get("revision"),
            )
        self.submitted += len(events)
        return True

    def shutdown(self) -> None:
        pass


_SINKS = {
    NoopSink.name: NoopSink,
    LoggingSink.name: LoggingSink,
}


def create_sink(name: str) -> EventSink:
    """Build a sink by its configured name ("noop" or "logging")."""
    try:
        return _SINKS[name]()
    except KeyError:
        raise ValueError(f"Unknown telemetry sink '{name}'. Known: {', '.join(sorted(_SINKS))}")


class TelemetryListener:
    """EventBus listener that batches events into a sink.

    Attributes:
        dropped: Events lost because the sink rejected their batch.
    """

    def __init__(self, sink: EventSink, batch_size: int = DEFAULT_BATCH_SIZE):
        self._sink = sink
        self._batch_size = max(1, batch_size)
        self._buffer: List[Dict[str, Any]] = []
        self.dropped = 0

    @property
    def sink(self) -> EventSink:
        return self._sink

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def __call__(self, event: FlowEvent) -> None:
        self._buffer.append(run_event_to_dict(event))
        if len(self._buffer) >= self._batch_size or event.kind.is_terminal:
            self.flush()

    def flush(self) -> Optional[bool]:
        """Submit buffered events; returns the sink's answer, None if empty."""
        if not self._buffer:
            return None
        batch, self._buffer = self._buffer, []
        accepted = self._sink.submit_events(batch)
        if not accepted:
            self.dropped += len(batch)
            logger.warning(
                "Telemetry sink '%s' rejected %d events", getattr(self._sink, "name", "?"), len(batch)
            )
        return accepted
