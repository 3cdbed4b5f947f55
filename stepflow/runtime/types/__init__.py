"""
types - Core type definitions for the stepflow runtime

This package provides the data types shared by the registry, scheduler,
event bus and storage layers: step definitions and trigger conditions, run
status, lifecycle events, state snapshots and run results, plus the serdes
helpers used to persist them.

All types use dataclasses with full type annotations.

Usage:
    from stepflow.runtime.types import (
        RunId, StepName, generate_run_id,
        TriggerKind, ConditionType, Condition, Step, STOP, and_, or_,
        RunStatus, EventKind, FlowEvent, FlowStateSnapshot,
        StepStatus, StepRecord, FlowRunResult,
        run_event_to_dict, run_event_from_dict,
        snapshot_to_dict, snapshot_from_dict,
    )
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict

from ._ids import RunId, StepName, _generate_event_id, generate_run_id
from ._time import _datetime_to_iso, _iso_to_datetime
from .runs import (
    EventKind,
    FlowEvent,
    FlowRunResult,
    FlowStateSnapshot,
    RunStatus,
    StepRecord,
    StepStatus,
)
from .steps import (
    STOP,
    Condition,
    ConditionLike,
    ConditionType,
    Step,
    StepCallable,
    TriggerKind,
    and_,
    as_condition,
    or_,
)


def _json_safe(value: Any) -> Any:
    """Return value if it is JSON-serializable, else its repr."""
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


def run_event_to_dict(event: FlowEvent) -> Dict[str, Any]:
    """Convert FlowEvent to a dictionary for serialization.

    Args:
        event: The FlowEvent to convert.

    Returns:
        Dictionary representation suitable for JSON serialization. Payload
        values that are not JSON-serializable are replaced by their repr.
    """
    return {
        "event_id": event.event_id,
        "seq": event.seq,
        "run_id": event.run_id,
        "ts": _datetime_to_iso(event.ts),
        "kind": event.kind.value,
        "flow_name": event.flow_name,
        "step_name": event.step_name,
        "revision": event.revision,
        "payload": {k: _json_safe(v) for k, v in event.payload.items()},
    }


def run_event_from_dict(data: Dict[str, Any]) -> FlowEvent:
    """Parse FlowEvent from a dictionary.

    Args:
        data: Dictionary with FlowEvent fields.

    Returns:
        Parsed FlowEvent instance.

    Note:
        Events missing event_id or seq get a fresh event_id and seq 0.
    """
    return FlowEvent(
        run_id=data.get("run_id", ""),
        kind=EventKind(data["kind"]),
        flow_name=data.get("flow_name", ""),
        revision=data.get("revision", 0),
        ts=_iso_to_datetime(data.get("ts")) or datetime.now(timezone.utc),
        seq=data.get("seq", 0),
        event_id=data.get("event_id") or _generate_event_id(),
        step_name=data.get("step_name"),
        payload=dict(data.get("payload", {})),
    )


def snapshot_to_dict(snapshot: FlowStateSnapshot) -> Dict[str, Any]:
    """Convert a FlowStateSnapshot to a plain dictionary."""
    return snapshot.to_dict()


def snapshot_from_dict(data: Dict[str, Any]) -> FlowStateSnapshot:
    """Parse a FlowStateSnapshot from a dictionary produced by snapshot_to_dict."""
    return FlowStateSnapshot(
        run_id=data["run_id"],
        revision=int(data.get("revision", 0)),
        data=MappingProxyType(dict(data.get("data", {}))),
        outputs=MappingProxyType(dict(data.get("outputs", {}))),
    )


__all__ = [
    # IDs
    "RunId",
    "StepName",
    "generate_run_id",
    # Steps
    "TriggerKind",
    "ConditionType",
    "Condition",
    "ConditionLike",
    "Step",
    "StepCallable",
    "STOP",
    "and_",
    "or_",
    "as_condition",
    # Runs
    "RunStatus",
    "EventKind",
    "FlowEvent",
    "FlowStateSnapshot",
    "StepStatus",
    "StepRecord",
    "FlowRunResult",
    # Serdes
    "run_event_to_dict",
    "run_event_from_dict",
    "snapshot_to_dict",
    "snapshot_from_dict",
]
