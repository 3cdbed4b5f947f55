"""
storage.py - State stores for checkpointing and resuming flow runs.

A StateStore keeps the latest FlowStateSnapshot per run and, optionally,
the run's event log. The scheduler saves after initialization and after
every tick; failures surface as PersistenceError, which the scheduler logs
without failing the run.

The file layout used by FileStateStore is:

    <root>/
      <run_id>/
        state.json      # latest FlowStateSnapshot, written atomically
        events.jsonl    # newline-delimited FlowEvent objects

Usage:
    from stepflow.runtime.storage import FileStateStore, InMemoryStateStore

    store = FileStateStore(Path("runs"))
    store.save(snapshot.run_id, snapshot)
    restored = store.load(snapshot.run_id)
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from .errors import PersistenceError, StateNotFoundError
from .types import (
    FlowEvent,
    FlowStateSnapshot,
    RunId,
    run_event_from_dict,
    run_event_to_dict,
    snapshot_from_dict,
    snapshot_to_dict,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
EVENTS_FILE = "events.jsonl"

DEFAULT_MAX_ENTRIES = 100


class StateStore(ABC):
    """Abstract persistence adapter for flow state snapshots."""

    @abstractmethod
    def save(self, run_id: RunId, snapshot: FlowStateSnapshot) -> None:
        """Store snapshot as the latest state of run_id.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """

    @abstractmethod
    def load(self, run_id: RunId) -> FlowStateSnapshot:
        """Return the latest snapshot for run_id.

        Raises:
            StateNotFoundError: If nothing was saved for run_id.
            PersistenceError: If the stored data could not be read.
        """

    @abstractmethod
    def delete(self, run_id: RunId) -> bool:
        """Remove everything stored for run_id; returns False if absent."""

    @abstractmethod
    def list_runs(self) -> List[RunId]:
        """Run ids with a stored snapshot."""

    def save_events(self, run_id: RunId, events: Sequence[FlowEvent]) -> None:
        """Persist a run's event log. Stores without an event log ignore it."""
        return None


class InMemoryStateStore(StateStore):
    """Process-local store with least-recently-used eviction.

    Args:
        max_entries: Number of runs kept before the least recently used one
            is evicted.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._snapshots: "OrderedDict[RunId, FlowStateSnapshot]" = OrderedDict()
        self._events: Dict[RunId, List[FlowEvent]] = {}
        self._lock = threading.Lock()

    def save(self, run_id: RunId, snapshot: FlowStateSnapshot) -> None:
        with self._lock:
            self._snapshots[run_id] = snapshot
            self._snapshots.move_to_end(run_id)
            while len(self._snapshots) > self.max_entries:
                evicted, _ = self._snapshots.popitem(last=False)
                self._events.pop(evicted, None)
                logger.debug("Evicted state for run '%s'", evicted)

    def load(self, run_id: RunId) -> FlowStateSnapshot:
        with self._lock:
            if run_id not in self._snapshots:
                raise StateNotFoundError(run_id)
            self._snapshots.move_to_end(run_id)
            return self._snapshots[run_id]

    def delete(self, run_id: RunId) -> bool:
        with self._lock:
            self._events.pop(run_id, None)
            return self._snapshots.pop(run_id, None) is not None

    def list_runs(self) -> List[RunId]:
        with self._lock:
            return list(self._snapshots)

    def save_events(self, run_id: RunId, events: Sequence[FlowEvent]) -> None:
        with self._lock:
            self._events.setdefault(run_id, []).extend(events)

    def read_events(self, run_id: RunId) -> List[FlowEvent]:
        with self._lock:
            return list(self._events.get(run_id, []))

    def __len__(self) -> int:
        return len(self._snapshots)


_RUN_LOCKS: Dict[str, threading.Lock] = {}
_RUN_LOCKS_LOCK = threading.Lock()


def _get_run_lock(run_id: RunId) -> threading.Lock:
    """Get or create the lock serializing writes for one run."""
    with _RUN_LOCKS_LOCK:
        lock = _RUN_LOCKS.get(run_id)
        if lock is None:
            lock = threading.Lock()
            _RUN_LOCKS[run_id] = lock
        return lock


def _atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON data to a file atomically (temp file + os.replace).

    Args:
        path: Destination file path.
        data: JSON-serializable data.
        indent: JSON indentation level.
    """
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    # Temp file in the same directory so the rename stays on one filesystem
    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.name + ".", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class FileStateStore(StateStore):
    """JSON-on-disk store, one directory per run."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def run_path(self, run_id: RunId) -> Path:
        return self.root / run_id

    def save(self, run_id: RunId, snapshot: FlowStateSnapshot) -> None:
        path = self.run_path(run_id) / STATE_FILE
        with _get_run_lock(run_id):
            try:
                _atomic_write_json(path, snapshot_to_dict(snapshot))
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(run_id, f"could not write {path}: {e}") from e

    def load(self, run_id: RunId) -> FlowStateSnapshot:
        path = self.run_path(run_id) / STATE_FILE
        if not path.exists():
            raise StateNotFoundError(run_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return snapshot_from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise PersistenceError(run_id, f"could not read {path}: {e}") from e

    def delete(self, run_id: RunId) -> bool:
        path = self.run_path(run_id)
        if not path.is_dir():
            return False
        with _get_run_lock(run_id):
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise PersistenceError(run_id, f"could not delete {path}: {e}") from e
        return True

    def list_runs(self) -> List[RunId]:
        """Run ids with a state.json, sorted (run ids sort chronologically)."""
        if not self.root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and (entry / STATE_FILE).exists()
        )

    def save_events(self, run_id: RunId, events: Sequence[FlowEvent]) -> None:
        """Append events to the run's events.jsonl."""
        if not events:
            return
        path = self.run_path(run_id) / EVENTS_FILE
        with _get_run_lock(run_id):
            try:
                lines = [json.dumps(run_event_to_dict(e), ensure_ascii=False) for e in events]
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    for line in lines:
                        f.write(line + "\n")
                    f.flush()
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(run_id, f"could not append events to {path}: {e}") from e

    def read_events(self, run_id: RunId) -> List[FlowEvent]:
        """Events from events.jsonl in file order; malformed lines are skipped."""
        path = self.run_path(run_id) / EVENTS_FILE
        if not path.exists():
            return []
        events: List[FlowEvent] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(run_event_from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    logger.warning("Skipping malformed event line for run '%s'", run_id)
        return events
