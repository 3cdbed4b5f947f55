"""
scheduler.py - Tick-based execution of a built flow graph.

The ExecutionScheduler drives one run through the state machine

    Idle -> Running -> {Completed, Failed, Cancelled}

Each tick evaluates triggers, invokes every newly eligible step (concurrently,
bounded by max_concurrency) and waits for all of them to settle before the
next evaluation. Ticks never overlap. Completions are merged into the
RunRecord and FlowState on the event loop thread, so revisions and event
sequence numbers follow real completion order.

Key behaviors:
- Plain callables run on a thread pool; coroutine functions are awaited.
- A failed step with no fallback fails the run once its tick settles.
- Re-entry bounds are checked before a tick starts; an exceeded bound fails
  the run with CycleLimitExceeded and nothing from that tick runs.
- Cancellation is cooperative: in-flight steps finish, nothing new starts.
- The state store (if any) is saved after initialization and every tick.

Usage:
    scheduler = ExecutionScheduler(graph, FlowState({"count": 0}), flow_name="demo", bus=bus)
    result = await scheduler.run()
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .cancellation import CancellationToken
from .errors import CycleLimitExceeded, ExecutionError, FlowCancelledError, FlowError, PersistenceError
from .events import EventBus
from .registry import ExecutionGraph
from .state import FlowState
from .storage import StateStore
from .triggers import RunRecord, TriggerEvaluator
from .types import (
    STOP,
    EventKind,
    FlowEvent,
    FlowRunResult,
    FlowStateSnapshot,
    RunId,
    RunStatus,
    StepName,
    StepRecord,
    StepStatus,
)
from .types._time import _utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8


class StepInputs(Mapping[str, Any]):
    """Read-only upstream values handed to a step, plus invocation context.

    Attributes:
        step_name: Name of the step being invoked.
        run_id: Run the invocation belongs to.
        attempt: 1-based count of this step's runs within the run.
        cancel_token: The run's cancellation token.
    """

    def __init__(
        self,
        values: Mapping[str, Any],
        *,
        step_name: StepName,
        run_id: RunId,
        attempt: int,
        cancel_token: CancellationToken,
    ):
        self._values = dict(values)
        self.step_name = step_name
        self.run_id = run_id
        self.attempt = attempt
        self.cancel_token = cancel_token

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"StepInputs(step={self.step_name!r}, attempt={self.attempt}, values={self._values!r})"


class ExecutionScheduler:
    """Runs one flow execution to a terminal status.

    A scheduler instance is single-use: run() may be awaited once.
    """

    def __init__(
        self,
        graph: ExecutionGraph,
        state: FlowState,
        *,
        flow_name: str,
        bus: Optional[EventBus] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        store: Optional[StateStore] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._graph = graph
        self._state = state
        self._flow_name = flow_name
        self._bus = bus or EventBus()
        self._max_concurrency = max_concurrency
        self._store = store
        self._token = cancel_token or CancellationToken()
        self._evaluator = TriggerEvaluator(graph)
        self._record = RunRecord()
        self._status = RunStatus.IDLE
        self._seq = 0

        self._failure: Optional[FlowError] = None
        self._failed_step: Optional[StepName] = None
        self._stopped = False
        self._step_cancelled = False

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def run_id(self) -> RunId:
        return self._state.run_id

    @property
    def record(self) -> RunRecord:
        return self._record

    @property
    def cancel_token(self) -> CancellationToken:
        return self._token

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> FlowRunResult:
        """Execute the flow until it reaches a terminal status.

        Step errors never escape; they are reported on the returned result.
        """
        if self._status != RunStatus.IDLE:
            raise RuntimeError(f"Scheduler for run '{self.run_id}' has already been started")
        self._status = RunStatus.RUNNING
        started = time.monotonic()

        logger.info("Starting flow '%s' run %s", self._flow_name, self.run_id)
        self._emit(EventKind.FLOW_STARTED, payload={"start_steps": list(self._graph.start_steps)})
        self._persist()

        cancelled = False
        executor = ThreadPoolExecutor(max_workers=self._max_concurrency, thread_name_prefix="stepflow")
        semaphore = asyncio.Semaphore(self._max_concurrency)
        try:
            eligible = self._evaluator.initial()
            while True:
                if self._token.cancelled:
                    cancelled = True
                    break
                if not eligible:
                    break
                exceeded = self._check_reentry(eligible)
                if exceeded is not None:
                    self._failure = exceeded
                    self._failed_step = exceeded.step_name
                    logger.warning("%s", exceeded)
                    break

                await self._run_tick(eligible, executor, semaphore)
                self._persist()

                if self._failure is not None:
                    break
                if self._step_cancelled:
                    cancelled = True
                    break
                if self._stopped:
                    logger.info("Flow '%s' stopped by a step at tick %d", self._flow_name, self._record.tick)
                    break
                self._record.tick += 1
                eligible = self._evaluator.next_eligible(self._record)
        finally:
            executor.shutdown(wait=False)

        if self._failure is not None:
            self._status = RunStatus.FAILED
            self._emit(
                EventKind.FLOW_FAILED,
                step_name=self._failed_step,
                payload={"error": str(self._failure), "error_type": type(self._failure).__name__},
            )
        elif cancelled:
            self._status = RunStatus.CANCELLED
            self._emit(EventKind.FLOW_CANCELLED, payload={"reason": self._token.reason})
        else:
            self._status = RunStatus.COMPLETED
            self._emit(
                EventKind.FLOW_COMPLETED,
                payload={"stopped": self._stopped, "steps_run": len(self._record.step_records)},
            )

        self._flush_events()
        duration = time.monotonic() - started
        logger.info(
            "Flow '%s' run %s finished: %s in %.3fs",
            self._flow_name,
            self.run_id,
            self._status.value,
            duration,
        )
        return FlowRunResult(
            run_id=self.run_id,
            flow_name=self._flow_name,
            status=self._status,
            final_state=self._state.snapshot(),
            error=self._failure,
            failed_step=self._failed_step,
            events=list(self._record.events),
            step_records=list(self._record.step_records),
            outputs=dict(self._record.outputs),
            total_duration_seconds=duration,
        )

    def _check_reentry(self, eligible: List[StepName]) -> Optional[CycleLimitExceeded]:
        """Return the error for the first step whose next run exceeds its bound."""
        for name in eligible:
            limit = self._graph.reentry_limits.get(name)
            if limit is None:
                continue
            # Runs so far equal the re-entry count of the next run
            if self._record.run_counts.get(name, 0) > limit:
                return CycleLimitExceeded(name, limit)
        return None

    async def _run_tick(
        self,
        eligible: List[StepName],
        executor: ThreadPoolExecutor,
        semaphore: asyncio.Semaphore,
    ) -> None:
        """Invoke every eligible step and wait until all of them settle."""
        logger.debug("Tick %d: running %s", self._record.tick, ", ".join(eligible))
        scheduled = []
        for name in eligible:
            values = self._evaluator.inputs_for(name, self._record)
            attempt = self._record.mark_started(name)
            inputs = StepInputs(
                values,
                step_name=name,
                run_id=self.run_id,
                attempt=attempt,
                cancel_token=self._token,
            )
            scheduled.append(self._run_step(name, inputs, executor, semaphore))
        await asyncio.gather(*scheduled)

    # ------------------------------------------------------------------
    # Step invocation
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        name: StepName,
        inputs: StepInputs,
        executor: ThreadPoolExecutor,
        semaphore: asyncio.Semaphore,
    ) -> None:
        step = self._graph.get(name)
        async with semaphore:
            if self._token.cancelled:
                logger.debug("Skipping step '%s': run cancelled", name)
                self._record.mark_skipped(name)
                return

            record = StepRecord(step_name=name, attempt=inputs.attempt, tick=self._record.tick)
            self._record.step_records.append(record)
            self._emit(EventKind.STEP_STARTED, step_name=name, payload={"attempt": inputs.attempt})
            started = time.monotonic()

            try:
                if inspect.iscoroutinefunction(step.fn):
                    output = await step.fn(self._state, inputs)
                else:
                    loop = asyncio.get_running_loop()
                    output = await loop.run_in_executor(
                        executor, functools.partial(step.fn, self._state, inputs)
                    )
                    if inspect.isawaitable(output):
                        output = await output
                if step.is_router and output is not STOP and output not in step.labels:
                    raise ExecutionError(
                        f"Router '{name}' returned {output!r}; expected one of {list(step.labels)}",
                        step_name=name,
                    )
            except FlowCancelledError as e:
                self._settle_cancelled(name, record, started, e)
                return
            except ExecutionError as e:
                if e.step_name is None:
                    e.step_name = name
                self._settle_failed(name, record, started, e)
                return
            except Exception as e:
                error = ExecutionError(str(e) or type(e).__name__, step_name=name)
                error.__cause__ = e
                self._settle_failed(name, record, started, error)
                return

            self._settle_completed(name, record, started, output)

    def _finish_record(self, record: StepRecord, started: float, status: StepStatus) -> float:
        duration = time.monotonic() - started
        record.status = status
        record.completed_at = _utcnow()
        record.duration_seconds = duration
        return duration

    def _settle_completed(self, name: StepName, record: StepRecord, started: float, output: Any) -> None:
        duration = self._finish_record(record, started, StepStatus.COMPLETED)
        step = self._graph.get(name)
        payload: Dict[str, Any] = {"duration_seconds": duration}

        if output is STOP:
            self._stopped = True
            self._state.record_output(name, None)
            self._record.mark_completed(name, None, self._graph, notify=False)
            payload.update(output=None, stopped=True)
        else:
            self._state.record_output(name, output)
            label = output if step.is_router else None
            self._record.mark_completed(name, output, self._graph, label=label)
            payload["output"] = output
            if label is not None:
                payload["label"] = label

        logger.debug("Step '%s' completed in %.3fs", name, duration)
        self._emit(EventKind.STEP_COMPLETED, step_name=name, payload=payload)

    def _settle_failed(self, name: StepName, record: StepRecord, started: float, error: ExecutionError) -> None:
        duration = self._finish_record(record, started, StepStatus.FAILED)
        record.error = str(error)
        handlers = self._record.mark_failed(name, error, self._graph)
        if handlers:
            logger.info("Step '%s' failed (%s); handled by %s", name, error, ", ".join(handlers))
        else:
            logger.warning("Step '%s' failed: %s", name, error)
            if self._failure is None:
                self._failure = error
                self._failed_step = name
        self._emit(
            EventKind.STEP_FAILED,
            step_name=name,
            payload={"error": str(error), "duration_seconds": duration, "handled_by": handlers},
        )

    def _settle_cancelled(
        self, name: StepName, record: StepRecord, started: float, error: FlowCancelledError
    ) -> None:
        duration = self._finish_record(record, started, StepStatus.CANCELLED)
        record.error = str(error)
        self._record.mark_settled(name)
        self._step_cancelled = True
        logger.info("Step '%s' observed cancellation", name)
        self._emit(
            EventKind.STEP_FAILED,
            step_name=name,
            payload={"error": str(error), "duration_seconds": duration, "cancelled": True},
        )

    # ------------------------------------------------------------------
    # Events and persistence
    # ------------------------------------------------------------------

    def _emit(
        self,
        kind: EventKind,
        step_name: Optional[StepName] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> FlowEvent:
        self._seq += 1
        event = FlowEvent(
            run_id=self.run_id,
            kind=kind,
            flow_name=self._flow_name,
            revision=self._state.revision,
            seq=self._seq,
            step_name=step_name,
            payload=payload or {},
        )
        self._record.events.append(event)
        self._bus.publish(event)
        return event

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self.run_id, self._storable_snapshot())
        except PersistenceError as e:
            logger.warning("Could not save state for run '%s': %s", self.run_id, e)

    def _storable_snapshot(self) -> FlowStateSnapshot:
        try:
            return self._state.snapshot(json_safe=True)
        except (TypeError, ValueError) as e:
            raise PersistenceError(self.run_id, f"could not serialize state: {e}") from e

    def _flush_events(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save_events(self.run_id, self._record.events)
        except PersistenceError as e:
            logger.warning("Could not save events for run '%s': %s", self.run_id, e)
