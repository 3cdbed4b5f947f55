"""
Test fixtures and utilities for stepflow runtime tests.

This module provides reusable fixtures for building small flows, recording
events and isolating the runtime configuration between tests.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Sequence

import pytest

from stepflow.config import runtime_config
from stepflow.runtime.types import FlowEvent

_ENV_VARS = (
    runtime_config.ENV_MAX_CONCURRENCY,
    runtime_config.ENV_MAX_REENTRIES,
    runtime_config.ENV_TELEMETRY_SINK,
    runtime_config.ENV_STATE_DIR,
)


@pytest.fixture(autouse=True)
def isolated_runtime_config(monkeypatch):
    """Clear STEPFLOW_* overrides and the cached config around every test."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    runtime_config.reset_config()
    yield
    runtime_config.reset_config()


class EventRecorder:
    """Thread-safe EventBus listener that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: List[FlowEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: FlowEvent) -> None:
        with self._lock:
            self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind.value for e in self.events]


class RecordingSink:
    """Event sink that keeps submitted batches in memory."""

    name = "recording"

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.batches: List[Sequence[Dict[str, Any]]] = []
        self.initialized = 0
        self.shut_down = 0

    def initialize(self) -> None:
        self.initialized += 1

    def submit_events(self, events: Sequence[Dict[str, Any]]) -> bool:
        self.batches.append(list(events))
        return self.accept

    def shutdown(self) -> None:
        self.shut_down += 1

    @property
    def events(self) -> List[Dict[str, Any]]:
        return [e for batch in self.batches for e in batch]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


def kinds_and_steps(events: Sequence[FlowEvent]) -> List[tuple]:
    """(kind value, step name) pairs, handy for order assertions."""
    return [(e.kind.value, e.step_name) for e in events]
