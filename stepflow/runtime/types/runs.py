"""Run types for execution lifecycle and event tracking.

This module contains types for representing run status, state snapshots,
lifecycle events, per-step execution records and the final run result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ._ids import RunId, StepName, _generate_event_id
from ._time import _utcnow

if TYPE_CHECKING:
    from ..errors import FlowError


class RunStatus(str, Enum):
    """Status of a run's execution lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class EventKind(str, Enum):
    """Lifecycle event kinds published on the EventBus."""

    FLOW_STARTED = "flow_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    FLOW_COMPLETED = "flow_completed"
    FLOW_FAILED = "flow_failed"
    FLOW_CANCELLED = "flow_cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.FLOW_COMPLETED, EventKind.FLOW_FAILED, EventKind.FLOW_CANCELLED)


@dataclass(frozen=True)
class FlowStateSnapshot:
    """Immutable copy of a FlowState at a given revision.

    Attributes:
        run_id: The run the state belongs to.
        revision: Revision counter at the time of the snapshot.
        data: Read-only view of the state values.
        outputs: Read-only view of the most recent output per step.
    """

    run_id: RunId
    revision: int
    data: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    outputs: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "revision": self.revision,
            "data": dict(self.data),
            "outputs": dict(self.outputs),
        }


@dataclass
class FlowEvent:
    """A single lifecycle event in a run's timeline.

    Attributes:
        run_id: The run this event belongs to.
        kind: Event kind.
        flow_name: Name of the flow being executed.
        revision: FlowState revision at the time of emission.
        ts: Timestamp of the event.
        seq: Monotonic sequence number within the run (assigned at emission).
        event_id: Globally unique identifier for this event.
        step_name: Step this event refers to (step events only).
        payload: Event-specific data (output, error, duration...).
    """

    run_id: RunId
    kind: EventKind
    flow_name: str
    revision: int
    ts: datetime = field(default_factory=_utcnow)
    seq: int = 0
    event_id: str = field(default_factory=_generate_event_id)
    step_name: Optional[StepName] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class StepStatus(str, Enum):
    """Outcome of a single step invocation."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepRecord:
    """Execution record for one invocation of a step."""

    step_name: StepName
    attempt: int
    tick: int
    status: StepStatus = StepStatus.RUNNING
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None


@dataclass
class FlowRunResult:
    """What kickoff() returns once a run reaches a terminal status.

    Attributes:
        run_id: The run identifier.
        flow_name: Name of the flow.
        status: Terminal status (completed, failed, cancelled).
        final_state: Snapshot of the state as of the last merged completion.
        error: Originating error when the run failed.
        failed_step: Step that raised the originating error, if any.
        events: Every event emitted during the run, in emission order.
        step_records: One record per step invocation.
        outputs: Most recent output per step.
        total_duration_seconds: Wall time from start to termination.
    """

    run_id: RunId
    flow_name: str
    status: RunStatus
    final_state: FlowStateSnapshot
    error: Optional["FlowError"] = None
    failed_step: Optional[StepName] = None
    events: List[FlowEvent] = field(default_factory=list)
    step_records: List[StepRecord] = field(default_factory=list)
    outputs: Dict[StepName, Any] = field(default_factory=dict)
    total_duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def steps_run(self) -> List[StepName]:
        """Names of the steps that started, in start order."""
        return [r.step_name for r in self.step_records]
