"""Error taxonomy for flow definition and execution.

Build-time errors (GraphValidationError, DuplicateStepError) surface
synchronously from registration and build(). Run-time step errors never
escape kickoff(); they are attached to the FlowRunResult of a failed run.
PersistenceError is logged by the scheduler and the run continues.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class FlowError(Exception):
    """Base exception for flow errors."""

    pass


class DuplicateStepError(FlowError):
    """Raised when a step name is registered twice in the same registry."""

    def __init__(self, step_name: str):
        self.step_name = step_name
        super().__init__(f"Step '{step_name}' is already registered")


class GraphValidationError(FlowError):
    """Raised by build() when the step graph is not executable.

    Attributes:
        problems: Every problem found in the build pass, in a deterministic
            order (registration order of the offending steps).
    """

    def __init__(self, problems: Sequence[str]):
        self.problems: List[str] = list(problems)
        super().__init__("Invalid flow graph: " + "; ".join(self.problems))


class ExecutionError(FlowError):
    """A step's own failure.

    Steps may raise this directly. Any other exception escaping a step is
    wrapped in an ExecutionError with the original chained as __cause__.
    """

    def __init__(self, message: str, step_name: Optional[str] = None):
        self.message = message
        self.step_name = step_name
        super().__init__(message)


class CycleLimitExceeded(FlowError):
    """Raised when a step on a router-mediated cycle exceeds its re-entry bound."""

    def __init__(self, step_name: str, limit: int):
        self.step_name = step_name
        self.limit = limit
        super().__init__(
            f"Step '{step_name}' exceeded its maximum of {limit} re-entries"
        )


class FlowCancelledError(FlowError):
    """Raised by a step that observed the cancellation token."""

    def __init__(self, message: str = "Flow run was cancelled"):
        super().__init__(message)


class PersistenceError(FlowError):
    """A state store failed to save or read. Non-fatal to the run."""

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(f"Persistence failed for run '{run_id}': {message}")


class StateNotFoundError(FlowError):
    """Raised when a state store has no snapshot for the requested run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"No saved state for run '{run_id}'")
