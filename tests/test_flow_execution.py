"""
Tests for running flows end to end through Flow.kickoff().

These tests verify the ExecutionScheduler state machine:
- Event order for a simple start -> listen chain
- Failure propagation and fallback recovery
- Router exclusivity and re-entry bounds on router loops
- Cooperative cancellation
- STOP, async steps and the concurrency bound
"""

from __future__ import annotations

import asyncio
import threading
import time

import pytest
from pydantic import BaseModel

from stepflow.runtime import (
    STOP,
    CancellationToken,
    CycleLimitExceeded,
    EventKind,
    ExecutionError,
    FlowCancelledError,
    GraphValidationError,
    Flow,
    NoopSink,
    RunStatus,
    StepStatus,
    and_,
    or_,
)
from stepflow.runtime.scheduler import ExecutionScheduler
from stepflow.runtime.state import FlowState

from conftest import kinds_and_steps


def make_flow(name: str = "test", **kwargs) -> Flow:
    kwargs.setdefault("telemetry_sink", NoopSink())
    return Flow(name, **kwargs)


def counting_flow() -> Flow:
    """S outputs 1; L stores S's output + 1 under count."""
    flow = make_flow("counting", initial_state={"count": 0})

    def l_step(state, inputs):
        value = inputs["S"] + 1
        state.set("count", value)
        return value

    flow.add_step("S", lambda state, inputs: 1)
    flow.add_listener("L", l_step, on="S")
    return flow


def loop_flow(done_on_attempt=None, max_reentries=3) -> Flow:
    """s -> work -> check; check routes "again" back to work or "done" to finish."""
    flow = make_flow("loop", max_reentries=max_reentries)

    def check(state, inputs):
        if done_on_attempt is not None and inputs.attempt >= done_on_attempt:
            return "done"
        return "again"

    flow.add_step("s", lambda state, inputs: None)
    flow.add_listener("work", lambda state, inputs: inputs.attempt, on=or_("s", "again"))
    flow.add_router("check", check, on="work", labels=["again", "done"])
    flow.add_listener("finish", lambda state, inputs: "finished", on="done")
    return flow


class TestEndToEnd:
    """Happy-path scenarios."""

    def test_start_listen_chain(self):
        """S -> L completes with count 2 and the expected event order."""
        result = counting_flow().kickoff()

        assert result.status == RunStatus.COMPLETED
        assert result.succeeded
        assert result.final_state.get("count") == 2
        assert result.outputs == {"S": 1, "L": 2}
        assert kinds_and_steps(result.events) == [
            ("flow_started", None),
            ("step_started", "S"),
            ("step_completed", "S"),
            ("step_started", "L"),
            ("step_completed", "L"),
            ("flow_completed", None),
        ]

    def test_event_sequence_and_revisions(self):
        result = counting_flow().kickoff()

        assert [e.seq for e in result.events] == list(range(1, len(result.events) + 1))
        revisions = [e.revision for e in result.events]
        assert revisions == sorted(revisions)
        assert {e.run_id for e in result.events} == {result.run_id}

    def test_seed_state_overrides_initial(self):
        flow = make_flow(initial_state={"n": 1, "keep": True})
        flow.add_step("s", lambda state, inputs: state.get("n") * 10)

        result = flow.kickoff({"n": 4})

        assert result.outputs["s"] == 40
        assert result.final_state.get("keep") is True

    def test_independent_listeners_all_complete(self):
        """N listeners on one start step all run; the flow completes once."""
        flow = make_flow()
        flow.add_step("s", lambda state, inputs: "go")
        names = [f"l{i}" for i in range(6)]
        for name in names:
            flow.add_listener(name, lambda state, inputs: inputs.step_name, on="s")

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert sorted(result.steps_run()) == sorted(["s"] + names)
        assert all(result.outputs[name] == name for name in names)
        completed = [e for e in result.events if e.kind == EventKind.FLOW_COMPLETED]
        assert len(completed) == 1
        assert result.events[-1].kind == EventKind.FLOW_COMPLETED

    def test_and_join_waits_for_both(self):
        flow = make_flow()
        flow.add_step("s", lambda state, inputs: 1)
        flow.add_listener("x", lambda state, inputs: "x", on="s")
        flow.add_listener("y", lambda state, inputs: "y", on="s")
        flow.add_listener("join", lambda state, inputs: dict(inputs), on=and_("x", "y"))

        result = flow.kickoff()

        assert result.outputs["join"] == {"x": "x", "y": "y"}
        assert result.steps_run().count("join") == 1

    def test_step_inputs_context(self):
        seen = {}

        def start(state, inputs):
            seen.update(step=inputs.step_name, run=inputs.run_id, attempt=inputs.attempt, values=dict(inputs))
            return None

        flow = make_flow()
        flow.add_step("s", start)
        result = flow.kickoff()

        assert seen == {"step": "s", "run": result.run_id, "attempt": 1, "values": {}}

    def test_structured_state(self):
        class Totals(BaseModel):
            total: int = 0

        flow = make_flow(state_model=Totals)
        flow.add_step("s", lambda state, inputs: state.set("total", state.get("total") + 5))

        result = flow.kickoff()

        assert result.final_state.get("total") == 5

    def test_async_steps(self):
        async def fetch(state, inputs):
            await asyncio.sleep(0)
            return 21

        async def double(state, inputs):
            await asyncio.sleep(0)
            return inputs["fetch"] * 2

        flow = make_flow()
        flow.add_step("fetch", fetch)
        flow.add_listener("double", double, on="fetch")

        result = flow.kickoff()

        assert result.outputs == {"fetch": 21, "double": 42}

    def test_kickoff_async(self):
        result = asyncio.run(counting_flow().kickoff_async())
        assert result.status == RunStatus.COMPLETED

    def test_step_records(self):
        result = counting_flow().kickoff()

        assert [(r.step_name, r.tick, r.status) for r in result.step_records] == [
            ("S", 0, StepStatus.COMPLETED),
            ("L", 1, StepStatus.COMPLETED),
        ]
        assert all(r.completed_at is not None for r in result.step_records)

    def test_each_kickoff_is_a_new_run(self):
        flow = counting_flow()
        first = flow.kickoff()
        second = flow.kickoff()

        assert first.run_id != second.run_id
        assert second.final_state.get("count") == 2


class TestFailures:
    """Step errors and fallback steps."""

    def test_execution_error_fails_flow(self):
        """S raising ExecutionError("x") fails the run; L never starts."""
        flow = make_flow()

        def s(state, inputs):
            raise ExecutionError("x")

        flow.add_step("S", s)
        flow.add_listener("L", lambda state, inputs: None, on="S")

        result = flow.kickoff()

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, ExecutionError)
        assert result.error.message == "x"
        assert result.error.step_name == "S"
        assert result.failed_step == "S"
        assert "L" not in result.steps_run()
        assert kinds_and_steps(result.events)[-2:] == [("step_failed", "S"), ("flow_failed", "S")]

    def test_other_exceptions_are_wrapped(self):
        flow = make_flow()

        def s(state, inputs):
            raise RuntimeError("kaput")

        flow.add_step("s", s)
        result = flow.kickoff()

        assert isinstance(result.error, ExecutionError)
        assert str(result.error) == "kaput"
        assert isinstance(result.error.__cause__, RuntimeError)
        assert result.step_records[0].status == StepStatus.FAILED

    def test_siblings_in_failing_tick_still_complete(self):
        flow = make_flow()
        flow.add_step("s", lambda state, inputs: None)

        def bad(state, inputs):
            raise ExecutionError("bad")

        def slow(state, inputs):
            time.sleep(0.05)
            return "slow"

        flow.add_listener("bad", bad, on="s")
        flow.add_listener("slow", slow, on="s")
        flow.add_listener("after", lambda state, inputs: None, on="slow")

        result = flow.kickoff()

        assert result.status == RunStatus.FAILED
        assert result.outputs["slow"] == "slow"
        assert "after" not in result.steps_run()

    def test_fallback_recovers(self):
        received = {}

        def s(state, inputs):
            raise ValueError("boom")

        def recover(state, inputs):
            received.update(inputs)
            state.set("recovered", True)
            return "ok"

        flow = make_flow()
        flow.add_step("s", s)
        flow.add_listener("l", lambda state, inputs: None, on="s")
        flow.add_fallback("recover", recover, on="s")

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert result.final_state.get("recovered") is True
        assert list(received) == ["s"]
        assert isinstance(received["s"], ExecutionError)
        assert isinstance(received["s"].__cause__, ValueError)
        assert "l" not in result.steps_run()
        failed = [e for e in result.events if e.kind == EventKind.STEP_FAILED]
        assert failed[0].payload["handled_by"] == ["recover"]

    def test_failing_fallback_fails_flow(self):
        def fail(state, inputs):
            raise ExecutionError("nope")

        flow = make_flow()
        flow.add_step("s", fail)
        flow.add_fallback("recover", fail)

        result = flow.kickoff()

        assert result.status == RunStatus.FAILED
        assert result.failed_step == "recover"

    def test_router_unknown_label_fails(self):
        flow = make_flow()
        flow.add_step("s", lambda state, inputs: None)
        flow.add_router("r", lambda state, inputs: "c", on="s", labels=["a", "b"])

        result = flow.kickoff()

        assert result.status == RunStatus.FAILED
        assert result.failed_step == "r"
        assert "expected one of ['a', 'b']" in str(result.error)

    def test_build_errors_surface_from_kickoff(self):
        flow = make_flow()
        flow.add_listener("l", lambda state, inputs: None, on="ghost")

        with pytest.raises(GraphValidationError):
            flow.kickoff()


class TestRouting:
    """Router exclusivity and re-entry bounds."""

    def test_only_selected_branch_runs(self):
        flow = make_flow()
        flow.add_step("s", lambda state, inputs: None)
        flow.add_router("r", lambda state, inputs: "a", on="s", labels=["a", "b"])
        flow.add_listener("on_a", lambda state, inputs: dict(inputs), on="a")
        flow.add_listener("on_b", lambda state, inputs: dict(inputs), on="b")

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert "on_a" in result.steps_run()
        assert "on_b" not in result.steps_run()
        assert result.outputs["on_a"] == {"a": "a"}
        router_done = [e for e in result.events if e.kind == EventKind.STEP_COMPLETED and e.step_name == "r"]
        assert router_done[0].payload["label"] == "a"

    def test_loop_within_bound_completes(self):
        """With max re-entries 3, four runs of the loop body are allowed."""
        result = loop_flow(done_on_attempt=4, max_reentries=3).kickoff()

        assert result.status == RunStatus.COMPLETED
        assert result.steps_run().count("work") == 4
        assert result.outputs["finish"] == "finished"

    def test_fourth_reentry_exceeds_limit(self):
        """An endless loop fails with CycleLimitExceeded on the 4th re-entry."""
        result = loop_flow(done_on_attempt=None, max_reentries=3).kickoff()

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, CycleLimitExceeded)
        assert result.error.step_name == "work"
        assert result.error.limit == 3
        assert result.steps_run().count("work") == 4
        assert result.steps_run().count("check") == 4
        assert result.events[-1].kind == EventKind.FLOW_FAILED

    def test_per_step_bound_overrides_flow_bound(self):
        flow = make_flow("loop", max_reentries=10)
        flow.add_step("s", lambda state, inputs: None)
        flow.add_listener("work", lambda state, inputs: None, on=or_("s", "again"), max_reentries=1)
        flow.add_router("check", lambda state, inputs: "again", on="work", labels=["again"])

        result = flow.kickoff()

        assert isinstance(result.error, CycleLimitExceeded)
        assert result.steps_run().count("work") == 2


class TestUncopyableOutputs:
    """Steps may return values that cannot be deep-copied."""

    @pytest.mark.parametrize(
        "factory",
        [threading.Lock, lambda: (i for i in range(3))],
        ids=["lock", "generator"],
    )
    def test_run_completes(self, factory):
        produced = []

        def step(state, inputs):
            value = factory()
            produced.append(value)
            return value

        flow = make_flow()
        flow.add_step("s", step)
        flow.add_listener("l", lambda state, inputs: inputs["s"] is produced[0], on="s")

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert result.outputs["l"] is True
        assert result.final_state.outputs["s"] is produced[0]


class TestStop:
    def test_stop_ends_flow(self):
        flow = make_flow()
        flow.add_step("s", lambda state, inputs: STOP)
        flow.add_listener("l", lambda state, inputs: None, on="s")

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert result.steps_run() == ["s"]
        assert result.events[-1].payload["stopped"] is True

    def test_stop_lets_tick_settle(self):
        flow = make_flow()
        flow.add_step("a", lambda state, inputs: STOP)
        flow.add_step("b", lambda state, inputs: "b")
        flow.add_listener("after_b", lambda state, inputs: None, on="b")

        result = flow.kickoff()

        assert result.outputs["b"] == "b"
        assert "after_b" not in result.steps_run()


class TestCancellation:
    """Cooperative cancellation."""

    def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel("not today")

        result = counting_flow().kickoff(cancel_token=token)

        assert result.status == RunStatus.CANCELLED
        assert result.steps_run() == []
        assert kinds_and_steps(result.events) == [("flow_started", None), ("flow_cancelled", None)]
        assert result.events[-1].payload["reason"] == "not today"

    def test_in_flight_steps_finish_no_new_steps(self):
        """Cancelling mid-tick lets siblings finish and schedules nothing else."""
        token = CancellationToken()
        sibling_started = threading.Event()

        def canceller(state, inputs):
            sibling_started.wait(timeout=5)
            token.cancel()
            return "cancelled"

        def sibling(state, inputs):
            sibling_started.set()
            time.sleep(0.05)
            state.set("sibling_done", True)
            return "sibling"

        flow = make_flow()
        flow.add_step("s", lambda state, inputs: None)
        flow.add_listener("canceller", canceller, on="s")
        flow.add_listener("sibling", sibling, on="s")
        flow.add_listener("next", lambda state, inputs: None, on="sibling")

        result = flow.kickoff(cancel_token=token)

        assert result.status == RunStatus.CANCELLED
        assert result.final_state.get("sibling_done") is True
        assert result.outputs["canceller"] == "cancelled"
        assert "next" not in result.steps_run()

    def test_step_raising_cancelled(self):
        def s(state, inputs):
            inputs.cancel_token.cancel()
            inputs.cancel_token.raise_if_cancelled()

        flow = make_flow()
        flow.add_step("s", s)

        result = flow.kickoff()

        assert result.status == RunStatus.CANCELLED
        assert result.error is None
        assert result.step_records[0].status == StepStatus.CANCELLED

    def test_flow_cancel_signals_running_run(self):
        flow = make_flow()
        holder = {}

        def s(state, inputs):
            holder["cancelled"] = flow.cancel("stop")
            return None

        flow.add_step("s", s)
        flow.add_listener("l", lambda state, inputs: None, on="s")

        result = flow.kickoff()

        assert holder["cancelled"] is True
        assert result.status == RunStatus.CANCELLED
        assert flow.cancel() is False

    def test_flow_cancelled_error_message(self):
        token = CancellationToken()
        token.cancel("why")
        with pytest.raises(FlowCancelledError, match="why"):
            token.raise_if_cancelled()


class TestConcurrency:
    def test_max_concurrency_bounds_parallel_steps(self):
        lock = threading.Lock()
        state_counter = {"running": 0, "peak": 0}

        def work(state, inputs):
            with lock:
                state_counter["running"] += 1
                state_counter["peak"] = max(state_counter["peak"], state_counter["running"])
            time.sleep(0.03)
            with lock:
                state_counter["running"] -= 1
            return None

        flow = make_flow(max_concurrency=2)
        flow.add_step("s", lambda state, inputs: None)
        for i in range(5):
            flow.add_listener(f"w{i}", work, on="s")

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert state_counter["peak"] <= 2
        assert len(result.steps_run()) == 6

    def test_scheduler_is_single_use(self):
        flow = counting_flow()
        scheduler = ExecutionScheduler(flow.build(), FlowState(), flow_name="x")
        asyncio.run(scheduler.run())

        with pytest.raises(RuntimeError):
            asyncio.run(scheduler.run())
        assert scheduler.status == RunStatus.COMPLETED


class TestListeners:
    def test_flow_and_kickoff_listeners(self, recorder):
        flow = counting_flow()
        flow.subscribe(recorder)
        extra = []

        result = flow.kickoff(listeners=[extra.append])

        assert recorder.kinds()[0] == "flow_started"
        assert len(recorder.events) == len(result.events) == len(extra)

    def test_failing_listener_does_not_break_run(self, recorder, caplog):
        def broken(event):
            raise RuntimeError("listener down")

        flow = counting_flow()
        flow.subscribe(broken)
        flow.subscribe(recorder)

        result = flow.kickoff()

        assert result.status == RunStatus.COMPLETED
        assert len(recorder.events) == len(result.events)
        assert "listener down" in caplog.text

    def test_unsubscribed_listener_sees_nothing(self, recorder):
        flow = counting_flow()
        flow.subscribe(recorder).unsubscribe()

        flow.kickoff()

        assert recorder.events == []

    def test_telemetry_sink_receives_every_event(self, recording_sink):
        flow = counting_flow()
        flow.telemetry_sink = recording_sink

        result = flow.kickoff()

        assert [e["seq"] for e in recording_sink.events] == [e.seq for e in result.events]
        assert recording_sink.initialized == 1
        assert recording_sink.shut_down == 1
