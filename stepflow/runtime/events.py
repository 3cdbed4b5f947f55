"""
events.py - Per-run fan-out of lifecycle events.

A fresh EventBus is created for every kickoff() so listeners registered for
one run never see another run's events. publish() delivers to every current
listener in subscription order; a listener raising is logged and skipped,
it never blocks delivery to the others and never reaches the run.

Usage:
    bus = EventBus()
    subscription = bus.subscribe(lambda event: print(event.kind))
    bus.publish(event)
    subscription.unsubscribe()
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Dict, List

from .types import FlowEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[FlowEvent], None]


class Subscription:
    """Handle returned by EventBus.subscribe(); usable as a context manager."""

    def __init__(self, bus: "EventBus", token: int, listener: EventListener):
        self._bus = bus
        self._token = token
        self.listener = listener

    @property
    def active(self) -> bool:
        return self._bus._has(self._token)

    def unsubscribe(self) -> None:
        self._bus._remove(self._token)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class EventBus:
    """Synchronous publish/subscribe hub with per-listener failure isolation."""

    def __init__(self) -> None:
        self._listeners: Dict[int, EventListener] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self.delivery_errors = 0

    def subscribe(self, listener: EventListener) -> Subscription:
        """Register a listener; returns the handle used to unsubscribe."""
        if not callable(listener):
            raise TypeError(f"Event listener must be callable, got {listener!r}")
        with self._lock:
            token = next(self._tokens)
            self._listeners[token] = listener
        return Subscription(self, token, listener)

    def publish(self, event: FlowEvent) -> int:
        """Deliver an event to every listener; returns the successful deliveries."""
        with self._lock:
            listeners = list(self._listeners.values())
        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception as e:
                self.delivery_errors += 1
                logger.warning(
                    "Event listener %r failed on %s (run '%s'): %s",
                    listener,
                    event.kind.value,
                    event.run_id,
                    e,
                )
        return delivered

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def listeners(self) -> List[EventListener]:
        with self._lock:
            return list(self._listeners.values())

    def _has(self, token: int) -> bool:
        with self._lock:
            return token in self._listeners

    def _remove(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)
