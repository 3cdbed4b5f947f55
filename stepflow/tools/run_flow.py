#!/usr/bin/env python3
"""
Run Flow

Loads a module that defines a flow, runs it once and reports the outcome.

The target is a dotted module path or a path to a .py file, optionally
suffixed with ``:attr``. ``attr`` may name a flow object or a zero-argument
factory returning one. Without ``:attr`` the first public module attribute
that looks like a flow (callable ``kickoff`` and ``subscribe``) is used.

Exit codes:
    0  flow completed
    1  flow failed (failed step and message printed to stderr)
    2  flow cancelled
    3  the target could not be loaded or the arguments are invalid

Usage:
    stepflow-run examples/greeting.py --input '{"name": "Ada"}' --verbose
    stepflow-run mypackage.flows:build_flow --state-dir runs/ --resume run-20250101-120000-ab12cd
    stepflow-run mypackage.flows --plot
"""

from __future__ import annotations

import argparse
import importlib
import importlib.util
import json
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Optional, Sequence, Tuple

from stepflow.config import runtime_config
from stepflow.runtime.errors import FlowError
from stepflow.runtime.flow import is_flow_like
from stepflow.runtime.storage import FileStateStore
from stepflow.runtime.types import FlowEvent, RunStatus

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_LOAD_ERROR = 3


class FlowLoadError(Exception):
    """Raised when the target module or flow object cannot be resolved."""

    pass


def _split_target(target: str) -> Tuple[str, Optional[str]]:
    """Split "module:attr" into its parts; a trailing identifier is required."""
    if ":" in target:
        head, tail = target.rsplit(":", 1)
        if tail.isidentifier():
            return head, tail
    return target, None


def _load_module(location: str) -> ModuleType:
    path = Path(location)
    if location.endswith(".py") or path.is_file():
        if not path.is_file():
            raise FlowLoadError(f"File not found: {location}")
        module_name = f"_stepflow_target_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise FlowLoadError(f"Cannot import {location}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise FlowLoadError(f"Error while importing {location}: {e}") from e
        return module
    try:
        return importlib.import_module(location)
    except ImportError as e:
        raise FlowLoadError(f"Cannot import module '{location}': {e}") from e


def load_flow(target: str) -> Any:
    """Resolve a TARGET argument to a flow-like object.

    Raises:
        FlowLoadError: If nothing flow-like can be found.
    """
    location, attr = _split_target(target)
    module = _load_module(location)

    if attr is not None:
        if not hasattr(module, attr):
            raise FlowLoadError(f"Module '{location}' has no attribute '{attr}'")
        candidate = getattr(module, attr)
        if is_flow_like(candidate):
            return candidate
        if callable(candidate):
            try:
                produced = candidate()
            except Exception as e:
                raise FlowLoadError(f"Factory '{attr}' raised: {e}") from e
            if is_flow_like(produced):
                return produced
            raise FlowLoadError(f"Factory '{attr}' did not return a flow (got {type(produced).__name__})")
        raise FlowLoadError(f"'{attr}' is not a flow (got {type(candidate).__name__})")

    for name, value in vars(module).items():
        if not name.startswith("_") and is_flow_like(value):
            logger.debug("Using flow '%s' from %s", name, location)
            return value
    raise FlowLoadError(f"No flow found in '{location}'")


def _print_event(event: FlowEvent) -> None:
    step = f" {event.step_name}" if event.step_name else ""
    detail = ""
    if "error" in event.payload:
        detail = f" error={event.payload['error']}"
    elif "output" in event.payload:
        detail = f" output={event.payload['output']!r}"
    print(f"[{event.seq:03d}] {event.kind.value}{step} rev={event.revision}{detail}", flush=True)


def _parse_input(raw: Optional[str]) -> dict:
    if raw is None:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FlowLoadError(f"--input is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise FlowLoadError("--input must be a JSON object")
    return value


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entrypoint for running a flow."""
    parser = argparse.ArgumentParser(description="Run a stepflow flow defined in a module or file")
    parser.add_argument(
        "target",
        help="Dotted module or .py file, optionally suffixed with :attr",
    )
    parser.add_argument(
        "--input",
        "-i",
        help="JSON object merged into the initial state",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Print every event and enable debug logging",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        help="Directory for file-backed state (defaults to STEPFLOW_STATE_DIR or config)",
    )
    parser.add_argument(
        "--resume",
        metavar="RUN_ID",
        help="Resume from the saved state of a previous run",
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        help="Print a Mermaid diagram of the flow graph and exit",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        flow = load_flow(args.target)
        seed_state = _parse_input(args.input)
    except FlowLoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_LOAD_ERROR

    if args.plot:
        if not callable(getattr(flow, "build", None)):
            print(f"Error: {type(flow).__name__} has no build() and cannot be plotted", file=sys.stderr)
            return EXIT_LOAD_ERROR
        try:
            print(flow.build().to_mermaid(), end="")
        except FlowError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_LOAD_ERROR
        return EXIT_COMPLETED

    state_dir = args.state_dir or runtime_config.get_state_dir()
    if state_dir is not None and hasattr(flow, "state_store"):
        if flow.state_store is None:
            flow.state_store = FileStateStore(state_dir)
    elif args.state_dir is not None:
        print(f"Error: {type(flow).__name__} has no state_store; --state-dir is not supported", file=sys.stderr)
        return EXIT_LOAD_ERROR
    if args.resume and getattr(flow, "state_store", None) is None:
        print("Error: --resume needs --state-dir or a flow with a state store", file=sys.stderr)
        return EXIT_LOAD_ERROR

    if args.verbose:
        flow.subscribe(_print_event)
    kwargs = {"resume_from": args.resume} if args.resume else {}
    try:
        result = flow.kickoff(seed_state or None, **kwargs)
    except FlowError as e:
        # Build-time and resume errors: the run never started
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_LOAD_ERROR

    print(json.dumps(
        {
            "run_id": result.run_id,
            "status": result.status.value,
            "state": result.final_state.to_dict()["data"],
        },
        indent=2,
        default=repr,
    ))

    if result.status == RunStatus.COMPLETED:
        return EXIT_COMPLETED
    if result.status == RunStatus.CANCELLED:
        print("Flow cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    step = result.failed_step or "<flow>"
    print(f"Flow failed at step '{step}': {result.error}", file=sys.stderr)
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
