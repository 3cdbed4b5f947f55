"""Cooperative cancellation for flow runs.

The scheduler checks the token between ticks and never starts a step once
it is set. Running steps see the same token through ``inputs.cancel_token``
and may poll it or call ``raise_if_cancelled()``.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import FlowCancelledError


class CancellationToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Later calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise FlowCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise FlowCancelledError(self._reason or "Flow run was cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout; returns the cancelled flag."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
