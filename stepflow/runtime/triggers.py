"""
triggers.py - Readiness evaluation for flow steps.

The RunRecord is the per-run bookkeeping the scheduler mutates as steps
start, complete and fail. The TriggerEvaluator reads it together with the
ExecutionGraph and answers one question per tick: which steps are now
eligible to run?

Rules:
- Start steps are eligible exactly once, at tick 0.
- Each consumer tracks the sources seen since it last ran. A producer
  completing (or a router emitting a label) adds the source; scheduling the
  consumer clears the set. SINGLE/OR conditions need one seen source, AND
  conditions need all of them.
- A router's emitted label feeds only the listeners of that label.
- Fallback steps become eligible when a watched step fails.
- A step already in flight is never selected again.
- Ties are broken by registration order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .errors import ExecutionError
from .registry import ExecutionGraph
from .types import FlowEvent, StepName, StepRecord, TriggerKind

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    """Transient bookkeeping for one run.

    Attributes:
        tick: Index of the current tick (0 = start steps).
        outputs: Most recent output per completed step.
        completion_counts: Number of completions per step.
        run_counts: Number of starts per step.
        in_flight: Steps currently executing.
        seen: Consumer -> sources seen since the consumer last ran.
        failures: Fallback step -> {failed step: error} awaiting handling.
        events: Every event emitted, in emission order.
        step_records: One record per step invocation.
    """

    tick: int = 0
    outputs: Dict[StepName, Any] = field(default_factory=dict)
    completion_counts: Dict[StepName, int] = field(default_factory=dict)
    run_counts: Dict[StepName, int] = field(default_factory=dict)
    in_flight: Set[StepName] = field(default_factory=set)
    seen: Dict[StepName, Set[str]] = field(default_factory=dict)
    failures: Dict[StepName, Dict[StepName, ExecutionError]] = field(default_factory=dict)
    events: List[FlowEvent] = field(default_factory=list)
    step_records: List[StepRecord] = field(default_factory=list)

    @property
    def any_step_ran(self) -> bool:
        return bool(self.run_counts)

    def has_completed(self, name: StepName) -> bool:
        return self.completion_counts.get(name, 0) > 0

    def mark_started(self, name: StepName) -> int:
        """Record a step start; returns its 1-based attempt number."""
        self.in_flight.add(name)
        self.run_counts[name] = self.run_counts.get(name, 0) + 1
        self.seen.pop(name, None)
        self.failures.pop(name, None)
        return self.run_counts[name]

    def mark_completed(
        self,
        name: StepName,
        output: Any,
        graph: ExecutionGraph,
        label: Optional[str] = None,
        notify: bool = True,
    ) -> None:
        """Record a completion and notify listening consumers.

        Args:
            name: Completed step.
            output: Its output.
            graph: Graph used to find consumers.
            label: Label emitted, when the step is a router.
            notify: False to record the completion without triggering
                listeners (used for STOP).
        """
        self.in_flight.discard(name)
        self.completion_counts[name] = self.completion_counts.get(name, 0) + 1
        self.outputs[name] = output
        if not notify:
            return
        for consumer in graph.listeners_of(name):
            self.seen.setdefault(consumer, set()).add(name)
        if label is not None:
            for consumer in graph.listeners_of(label):
                self.seen.setdefault(consumer, set()).add(label)

    def mark_failed(self, name: StepName, error: ExecutionError, graph: ExecutionGraph) -> List[StepName]:
        """Record a failure; returns the fallback steps that will handle it."""
        self.in_flight.discard(name)
        handlers = list(graph.fallbacks_for(name))
        for handler in handlers:
            self.failures.setdefault(handler, {})[name] = error
        return handlers

    def mark_settled(self, name: StepName) -> None:
        """Record a step that ended without completing (cancelled)."""
        self.in_flight.discard(name)

    def mark_skipped(self, name: StepName) -> None:
        """Undo mark_started for a step that was scheduled but never invoked."""
        self.in_flight.discard(name)
        remaining = self.run_counts.get(name, 0) - 1
        if remaining > 0:
            self.run_counts[name] = remaining
        else:
            self.run_counts.pop(name, None)


class TriggerEvaluator:
    """Computes the set of steps eligible to run in the next tick."""

    def __init__(self, graph: ExecutionGraph):
        self._graph = graph

    @property
    def graph(self) -> ExecutionGraph:
        return self._graph

    def initial(self) -> List[StepName]:
        """Start steps, in registration order (tick 0)."""
        return list(self._graph.start_steps)

    def next_eligible(self, record: RunRecord) -> List[StepName]:
        """Steps that became eligible since they last ran, registration order."""
        eligible: List[StepName] = []
        for name, step in self._graph.steps.items():
            if step.kind == TriggerKind.START or name in record.in_flight:
                continue
            if step.kind == TriggerKind.FALLBACK:
                if record.failures.get(name):
                    eligible.append(name)
                continue
            seen = record.seen.get(name)
            if seen and step.condition is not None and step.condition.is_satisfied(frozenset(seen)):
                eligible.append(name)
        if eligible:
            logger.debug("Tick %d eligible: %s", record.tick, ", ".join(eligible))
        return eligible

    def inputs_for(self, name: StepName, record: RunRecord) -> Dict[str, Any]:
        """Upstream values handed to a step about to run.

        Step sources map to the producer's most recent output; router labels
        map to themselves; fallback steps get failed step -> ExecutionError.
        Must be called before the step is marked started.
        """
        step = self._graph.get(name)
        if step.kind == TriggerKind.FALLBACK:
            return dict(record.failures.get(name, {}))
        inputs: Dict[str, Any] = {}
        seen = record.seen.get(name, set())
        for source in step.sources:
            if source in self._graph.steps:
                if record.has_completed(source):
                    inputs[source] = record.outputs[source]
            elif source in seen:
                inputs[source] = source
        return inputs
