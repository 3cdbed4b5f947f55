"""
state.py - Shared, versioned data container passed to every step.

A FlowState holds either an open key/value mapping or a fixed-shape pydantic
model. Every mutation goes through set() (or record_output() for step
outputs), which is serialized with a lock and bumps the revision counter so
observers can detect change without diffing.

The last ``history_size`` revisions are kept as snapshots; restore() rolls
the values back to one of them as a new revision.

Usage:
    from stepflow.runtime.state import FlowState

    state = FlowState({"count": 0})
    revision = state.set("count", 1)
    snapshot = state.snapshot()
    state.restore(0)

    class Counter(BaseModel):
        count: int = 0

    typed = FlowState(model=Counter)
    typed.set("count", "2")  # validated and coerced by pydantic
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from types import MappingProxyType
from typing import Any, Deque, Dict, Iterator, List, Mapping, Optional, Type, Union

from pydantic import BaseModel

from .types import FlowStateSnapshot, RunId, _json_safe, generate_run_id

logger = logging.getLogger(__name__)

_MISSING = object()

DEFAULT_HISTORY_SIZE = 10

ModelSpec = Union[Type[BaseModel], BaseModel]


def _copy_value(value: Any) -> Any:
    """Deep copy of value, or value itself when it cannot be copied.

    Step outputs may be generators, locks, clients and the like; those are
    shared by reference instead of failing the snapshot.
    """
    try:
        return copy.deepcopy(value)
    except Exception as e:
        logger.debug("Sharing uncopyable %s by reference: %s", type(value).__name__, e)
        return value


def _copy_mapping(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: _copy_value(value) for key, value in values.items()}


class FlowState:
    """Versioned state for one flow run.

    Attributes:
        run_id: Identifier of the run this state belongs to.
        revision: Monotonic counter incremented on every mutation.
    """

    def __init__(
        self,
        initial: Optional[Mapping[str, Any]] = None,
        *,
        model: Optional[ModelSpec] = None,
        run_id: Optional[RunId] = None,
        revision: int = 0,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        if history_size < 0:
            raise ValueError(f"history_size must be >= 0, got {history_size}")
        self.run_id: RunId = run_id or generate_run_id()
        self._revision = revision
        self._lock = threading.Lock()
        self._outputs: Dict[str, Any] = {}
        self._model: Optional[BaseModel] = None
        self._data: Dict[str, Any] = {}
        self._history: Deque[FlowStateSnapshot] = deque(maxlen=history_size)

        if model is not None:
            if isinstance(model, BaseModel):
                base = model.model_dump()
                model_cls = type(model)
            else:
                base = {}
                model_cls = model
            base.update(initial or {})
            self._model = model_cls.model_validate(base)
        else:
            self._data = dict(initial or {})
        self._remember()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def is_structured(self) -> bool:
        return self._model is not None

    @property
    def model(self) -> Optional[BaseModel]:
        """The current model instance for structured state (read-only use)."""
        return self._model

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under key, or default."""
        with self._lock:
            if self._model is not None:
                return getattr(self._model, key, default)
            return self._data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            raise KeyError(key)
        return value

    def __contains__(self, key: object) -> bool:
        if self._model is not None:
            return key in type(self._model).model_fields
        return key in self._data

    def keys(self) -> Iterator[str]:
        with self._lock:
            if self._model is not None:
                return iter(list(type(self._model).model_fields))
            return iter(list(self._data))

    def output_of(self, step_name: str, default: Any = None) -> Any:
        """Most recent output recorded for a step."""
        with self._lock:
            return self._outputs.get(step_name, default)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any) -> int:
        """Store value under key and return the new revision.

        Raises:
            KeyError: If the state is structured and key is not a model field.
            pydantic.ValidationError: If the model rejects the value.
        """
        with self._lock:
            if self._model is not None:
                model_cls = type(self._model)
                if key not in model_cls.model_fields:
                    raise KeyError(f"{model_cls.__name__} has no field '{key}'")
                merged = self._model.model_dump()
                merged[key] = value
                self._model = model_cls.model_validate(merged)
            else:
                self._data[key] = value
            return self._bump()

    def update(self, values: Mapping[str, Any]) -> int:
        """Set several keys; each key counts as one mutation."""
        revision = self._revision
        for key, value in values.items():
            revision = self.set(key, value)
        return revision

    def record_output(self, step_name: str, output: Any) -> int:
        """Record a step's output and return the new revision."""
        with self._lock:
            self._outputs[step_name] = output
            return self._bump()

    def _bump(self) -> int:
        # Caller holds the lock
        self._revision += 1
        self._remember()
        return self._revision

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _remember(self) -> None:
        if self._history.maxlen:
            self._history.append(self._snapshot_unlocked())

    def history(self) -> List[FlowStateSnapshot]:
        """Snapshots of the most recent revisions, oldest first."""
        with self._lock:
            return list(self._history)

    def restore(self, revision: int) -> bool:
        """Roll data and outputs back to a remembered revision.

        The rollback is itself a mutation: the revision counter moves forward
        and the restored values are recorded as the newest history entry.

        Returns:
            False if that revision is no longer (or never was) in history.
        """
        with self._lock:
            target = next((s for s in self._history if s.revision == revision), None)
            if target is None:
                return False
            if self._model is not None:
                self._model = type(self._model).model_validate(dict(target.data))
            else:
                self._data = _copy_mapping(target.data)
            self._outputs = _copy_mapping(target.outputs)
            self._bump()
        logger.debug("Run '%s' restored revision %d as %d", self.run_id, revision, self._revision)
        return True

    def clear_history(self) -> None:
        """Forget every remembered revision except the current one."""
        with self._lock:
            self._history.clear()
            self._remember()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _data_dict(self) -> Dict[str, Any]:
        if self._model is not None:
            return self._model.model_dump()
        return dict(self._data)

    def to_dict(self) -> Dict[str, Any]:
        """Plain copy of the current values."""
        with self._lock:
            return _copy_mapping(self._data_dict())

    def _snapshot_unlocked(self) -> FlowStateSnapshot:
        return FlowStateSnapshot(
            run_id=self.run_id,
            revision=self._revision,
            data=MappingProxyType(_copy_mapping(self._data_dict())),
            outputs=MappingProxyType(_copy_mapping(self._outputs)),
        )

    def snapshot(self, *, json_safe: bool = False) -> FlowStateSnapshot:
        """Immutable copy for persistence and telemetry.

        With json_safe=True every value is JSON-serializable: structured state
        is dumped in pydantic's JSON mode (so from_snapshot() parses it back)
        and anything else that json cannot encode is replaced by its repr.

        Raises:
            pydantic_core.PydanticSerializationError: If json_safe is set and
                the model holds a value pydantic cannot serialize.
        """
        with self._lock:
            if not json_safe:
                return self._snapshot_unlocked()
            if self._model is not None:
                data = self._model.model_dump(mode="json")
            else:
                data = {key: _json_safe(value) for key, value in self._data.items()}
            return FlowStateSnapshot(
                run_id=self.run_id,
                revision=self._revision,
                data=MappingProxyType(data),
                outputs=MappingProxyType({k: _json_safe(v) for k, v in self._outputs.items()}),
            )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: FlowStateSnapshot,
        *,
        model: Optional[ModelSpec] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> "FlowState":
        """Rebuild a state (same run id and revision) from a snapshot."""
        model_cls = type(model) if isinstance(model, BaseModel) else model
        state = cls(
            dict(snapshot.data),
            model=model_cls,
            run_id=snapshot.run_id,
            revision=snapshot.revision,
            history_size=history_size,
        )
        state._outputs = dict(snapshot.outputs)
        state.clear_history()
        logger.debug("Restored state for run '%s' at revision %d", snapshot.run_id, snapshot.revision)
        return state

    def __repr__(self) -> str:
        shape = type(self._model).__name__ if self._model is not None else "dict"
        return f"FlowState(run_id={self.run_id!r}, revision={self._revision}, shape={shape})"
