# stepflow/runtime package
# Event-driven flow engine: declare steps with triggers, then run them tick by tick.
#
# Core components:
#   - types: Core dataclasses (Step, Condition, FlowEvent, FlowRunResult, ...)
#   - registry: StepRegistry + immutable ExecutionGraph
#   - state: FlowState, the versioned shared data of a run
#   - triggers: RunRecord bookkeeping + TriggerEvaluator
#   - scheduler: ExecutionScheduler state machine
#   - events / telemetry: per-run EventBus and event sinks
#   - storage: StateStore implementations for checkpoint/resume
#   - flow: Flow facade (build API + kickoff)
#
# Usage:
#     from stepflow.runtime import Flow, and_, or_, STOP
#     flow = Flow("demo", initial_state={"count": 0})
#     flow.add_step("start", lambda state, inputs: 1)
#     result = flow.kickoff()

from .cancellation import CancellationToken
from .errors import (
    CycleLimitExceeded,
    DuplicateStepError,
    ExecutionError,
    FlowCancelledError,
    FlowError,
    GraphValidationError,
    PersistenceError,
    StateNotFoundError,
)
from .events import EventBus, Subscription
from .flow import Flow, is_flow_like
from .registry import ExecutionGraph, StepRegistry
from .scheduler import ExecutionScheduler, StepInputs
from .state import FlowState
from .storage import FileStateStore, InMemoryStateStore, StateStore
from .telemetry import EventSink, LoggingSink, NoopSink, TelemetryListener, create_sink
from .triggers import RunRecord, TriggerEvaluator
from .types import (
    STOP,
    Condition,
    EventKind,
    FlowEvent,
    FlowRunResult,
    FlowStateSnapshot,
    RunStatus,
    Step,
    StepRecord,
    StepStatus,
    TriggerKind,
    and_,
    or_,
)

__all__ = [
    "CancellationToken",
    "Condition",
    "CycleLimitExceeded",
    "DuplicateStepError",
    "EventBus",
    "EventKind",
    "EventSink",
    "ExecutionError",
    "ExecutionGraph",
    "ExecutionScheduler",
    "FileStateStore",
    "Flow",
    "FlowCancelledError",
    "FlowError",
    "FlowEvent",
    "FlowRunResult",
    "FlowState",
    "FlowStateSnapshot",
    "GraphValidationError",
    "InMemoryStateStore",
    "LoggingSink",
    "NoopSink",
    "PersistenceError",
    "RunRecord",
    "RunStatus",
    "STOP",
    "StateNotFoundError",
    "StateStore",
    "Step",
    "StepInputs",
    "StepRecord",
    "StepRegistry",
    "StepStatus",
    "Subscription",
    "TelemetryListener",
    "TriggerEvaluator",
    "TriggerKind",
    "and_",
    "create_sink",
    "is_flow_like",
    "or_",
]
