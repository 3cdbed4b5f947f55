"""
flow.py - Declarative flow definition and kickoff.

A Flow owns its StepRegistry and the collaborators a run needs (state shape,
state store, telemetry sink). Each kickoff() creates a fresh EventBus, a
fresh FlowState and a fresh ExecutionScheduler, so runs never share
listeners or bookkeeping.

Usage:
    from stepflow.runtime import Flow, and_

    flow = Flow("greeting", initial_state={"count": 0})
    flow.add_step("start", lambda state, inputs: 1)
    flow.add_listener("bump", lambda state, inputs: state.set("count", inputs["start"] + 1), on="start")

    result = flow.kickoff()
    assert result.succeeded
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from stepflow.config import runtime_config
from .cancellation import CancellationToken
from .events import EventBus, EventListener, Subscription
from .registry import ExecutionGraph, StepRegistry
from .scheduler import ExecutionScheduler
from .state import FlowState, ModelSpec
from .storage import StateStore
from .telemetry import EventSink, TelemetryListener, create_sink
from .types import (
    Condition,
    ConditionLike,
    FlowRunResult,
    RunId,
    Step,
    StepCallable,
    TriggerKind,
    and_,
    as_condition,
    or_,
)

logger = logging.getLogger(__name__)


class Flow:
    """A named graph of steps that can be executed any number of times.

    Args:
        name: Flow name, carried on every event.
        state_model: pydantic model class (or instance) giving the state a
            fixed shape. None gives an open key/value mapping.
        initial_state: Values every run starts from.
        max_concurrency: Steps allowed to execute at once within a tick.
            None uses the configured default.
        max_reentries: Re-entry bound for cyclic steps that declare none.
            None uses the configured default.
        state_store: Where snapshots are saved; None disables persistence.
        telemetry_sink: Event sink fed by every run; None uses the
            configured sink.
    """

    def __init__(
        self,
        name: str,
        *,
        state_model: Optional[ModelSpec] = None,
        initial_state: Optional[Mapping[str, Any]] = None,
        max_concurrency: Optional[int] = None,
        max_reentries: Optional[int] = None,
        state_store: Optional[StateStore] = None,
        telemetry_sink: Optional[EventSink] = None,
    ):
        if state_model is not None and not (
            isinstance(state_model, BaseModel)
            or (isinstance(state_model, type) and issubclass(state_model, BaseModel))
        ):
            raise TypeError("state_model must be a pydantic BaseModel subclass or instance")
        self.name = name
        self.state_model = state_model
        self.initial_state = dict(initial_state or {})
        self.max_concurrency = max_concurrency
        self.max_reentries = max_reentries
        self.state_store = state_store
        self.telemetry_sink = telemetry_sink

        self._registry = StepRegistry()
        self._graph: Optional[ExecutionGraph] = None
        self._listeners = EventBus()
        self._active_tokens: List[CancellationToken] = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Flow(name={self.name!r}, steps={len(self._registry)})"

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    @property
    def steps(self) -> List[Step]:
        return self._registry.steps

    def _register(self, step: Step) -> Step:
        registered = self._registry.register(step)
        self._graph = None
        return registered

    def add_step(self, name: str, fn: StepCallable, *, max_reentries: Optional[int] = None) -> Step:
        """Register a start step (eligible once, at the first tick)."""
        return self._register(
            Step(name=name, kind=TriggerKind.START, fn=fn, max_reentries=max_reentries)
        )

    def add_listener(
        self,
        name: str,
        fn: StepCallable,
        on: ConditionLike,
        *,
        max_reentries: Optional[int] = None,
    ) -> Step:
        """Register a step triggered by upstream completions or router labels.

        Args:
            on: A step name, a router label, or a condition built with
                and_() / or_().
        """
        return self._register(
            Step(
                name=name,
                kind=TriggerKind.LISTEN,
                fn=fn,
                condition=as_condition(on),
                max_reentries=max_reentries,
            )
        )

    def add_router(
        self,
        name: str,
        fn: StepCallable,
        on: ConditionLike,
        labels: Iterable[str],
        *,
        max_reentries: Optional[int] = None,
    ) -> Step:
        """Register a router; its return value must be one of labels."""
        if isinstance(labels, str):
            labels = [labels]
        return self._register(
            Step(
                name=name,
                kind=TriggerKind.ROUTER,
                fn=fn,
                condition=as_condition(on),
                labels=tuple(dict.fromkeys(labels)),
                max_reentries=max_reentries,
            )
        )

    def add_fallback(
        self,
        name: str,
        fn: StepCallable,
        on: Optional[ConditionLike] = None,
    ) -> Step:
        """Register a step run when a watched step (any step if on is None) fails."""
        condition: Optional[Condition] = None
        if on is not None:
            condition = or_(on) if isinstance(on, str) else as_condition(on)
        return self._register(Step(name=name, kind=TriggerKind.FALLBACK, fn=fn, condition=condition))

    def subscribe(self, listener: EventListener) -> Subscription:
        """Attach a listener to every future run of this flow."""
        return self._listeners.subscribe(listener)

    def build(self) -> ExecutionGraph:
        """Validate the steps and return the (cached) execution graph."""
        if self._graph is None:
            self._graph = self._registry.build(default_max_reentries=self._default_max_reentries())
        return self._graph

    def plot(self) -> str:
        """Mermaid flowchart of the built graph."""
        return self.build().to_mermaid()

    def _default_max_reentries(self) -> Optional[int]:
        if self.max_reentries is not None:
            return self.max_reentries
        return runtime_config.get_default_max_reentries()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def kickoff(
        self,
        seed_state: Optional[Mapping[str, Any]] = None,
        *,
        resume_from: Optional[RunId] = None,
        cancel_token: Optional[CancellationToken] = None,
        listeners: Sequence[EventListener] = (),
    ) -> FlowRunResult:
        """Run the flow to a terminal status and return the result.

        Must not be called from inside a running event loop; use
        kickoff_async() there.

        Raises:
            GraphValidationError: If the graph is invalid (nothing runs).
            StateNotFoundError: If resume_from names an unknown run.
        """
        return asyncio.run(
            self.kickoff_async(
                seed_state,
                resume_from=resume_from,
                cancel_token=cancel_token,
                listeners=listeners,
            )
        )

    async def kickoff_async(
        self,
        seed_state: Optional[Mapping[str, Any]] = None,
        *,
        resume_from: Optional[RunId] = None,
        cancel_token: Optional[CancellationToken] = None,
        listeners: Sequence[EventListener] = (),
    ) -> FlowRunResult:
        """Coroutine form of kickoff()."""
        graph = self.build()
        state = self._initial_state(seed_state, resume_from)
        token = cancel_token or CancellationToken()

        bus = EventBus()
        for listener in self._listeners.listeners():
            bus.subscribe(listener)
        for listener in listeners:
            bus.subscribe(listener)

        sink = self.telemetry_sink or create_sink(runtime_config.get_telemetry_sink())
        sink.initialize()
        telemetry = TelemetryListener(sink, batch_size=runtime_config.get_telemetry_batch_size())
        bus.subscribe(telemetry)

        max_concurrency = self.max_concurrency or runtime_config.get_max_concurrency()
        scheduler = ExecutionScheduler(
            graph,
            state,
            flow_name=self.name,
            bus=bus,
            max_concurrency=max_concurrency,
            store=self.state_store,
            cancel_token=token,
        )

        with self._lock:
            self._active_tokens.append(token)
        try:
            return await scheduler.run()
        finally:
            with self._lock:
                self._active_tokens.remove(token)
            telemetry.flush()
            sink.shutdown()

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Cancel every in-progress run; returns False if none is running."""
        with self._lock:
            tokens = list(self._active_tokens)
        for token in tokens:
            token.cancel(reason)
        return bool(tokens)

    def _initial_state(
        self,
        seed_state: Optional[Mapping[str, Any]],
        resume_from: Optional[RunId],
    ) -> FlowState:
        if resume_from is not None:
            if self.state_store is None:
                raise ValueError(f"Flow '{self.name}' has no state store to resume from")
            snapshot = self.state_store.load(resume_from)
            state = FlowState.from_snapshot(snapshot, model=self.state_model)
            if seed_state:
                state.update(seed_state)
            logger.info("Resuming run '%s' at revision %d", resume_from, state.revision)
            return state

        values = dict(self.initial_state)
        values.update(seed_state or {})
        return FlowState(values, model=self.state_model)


def is_flow_like(obj: Any) -> bool:
    """True for objects exposing callable kickoff() and subscribe()."""
    if isinstance(obj, type):
        return False
    return callable(getattr(obj, "kickoff", None)) and callable(getattr(obj, "subscribe", None))


__all__ = ["Flow", "is_flow_like", "and_", "or_"]
