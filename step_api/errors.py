"""Error types raised while dispatching a workflow step.

Each error carries the HTTP status it maps to. The app-level exception
handler in ``step_api.main`` turns them into ``{"detail": ...}`` responses.
"""

from __future__ import annotations


class StepDispatchError(Exception):
    """Base class for errors surfaced to the caller of a step endpoint."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class GraphConstructionError(StepDispatchError):
    """The nodes/edges payload does not describe a valid workflow graph."""

    status_code = 400


class StepOutOfRangeError(StepDispatchError):
    """The requested step index is beyond the end of the graph."""

    status_code = 404

    def __init__(self, step_index: int, step_count: int) -> None:
        super().__init__(
            f"Step {step_index} is out of range for a workflow with {step_count} steps"
        )
        self.step_index = step_index
        self.step_count = step_count


class UnknownNodeTypeError(StepDispatchError):
    """No handler is registered for the node's type."""

    status_code = 400


class NodeExecutionError(StepDispatchError):
    """A node handler failed while producing its result."""

    status_code = 502
