"""Exception types raised by the workflow engine."""

from __future__ import annotations

from contentflow.models.graph import ValidationDiagnostic


class ContentflowError(Exception):
    """Base class for engine errors."""


class GraphValidationError(ContentflowError):
    """Raised when a graph fails validation with structured diagnostics."""

    def __init__(self, diagnostics: list[ValidationDiagnostic]):
        self.diagnostics = diagnostics
        messages = "; ".join(d.message for d in diagnostics)
        super().__init__(f"Graph validation failed: {messages}")


class HardCycleError(GraphValidationError):
    """A cycle that does not pass through a loop construct."""

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        self.cycle_nodes: set[str] = {nid for cycle in cycles for nid in cycle}
        diagnostics = [
            ValidationDiagnostic(
                message=f"Cycle detected: {' -> '.join(cycle + cycle[:1])}",
                node_id=cycle[0],
            )
            for cycle in cycles
        ]
        super().__init__(diagnostics)


class HandlerError(ContentflowError):
    def __init__(self, node_id: str | None, message: str):
        self.node_id = node_id
        self.message = message
        super().__init__(message)


class NodeTimeoutError(HandlerError):
    def __init__(self, node_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(node_id, f"Node {node_id} timed out after {timeout_seconds}s")


class DecisionOutputError(HandlerError):
    """Decision handler returned something other than exactly one populated slot."""


class RunCancelledError(ContentflowError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} was cancelled")


class InvalidTransitionError(ContentflowError):
    def __init__(self, node_id: str, previous: str, state: str):
        self.node_id = node_id
        self.previous = previous
        self.state = state
        super().__init__(f"Invalid transition for node {node_id}: {previous} -> {state}")
