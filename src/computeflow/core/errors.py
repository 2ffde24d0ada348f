"""
Errors - Exception hierarchy for the compute-flow engine.

Structural problems are raised at the point of mutation, execution problems
are recorded on nodes, and persistence problems abort the operation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from computeflow.core.validation import GraphIssue


class ComputeFlowError(Exception):
    """Base exception for all compute-flow errors."""
    pass


class GraphStructureError(ComputeFlowError):
    """The graph violates a structural invariant (cycle, dangling port, ...)."""

    def __init__(self, message: str, issues: list[GraphIssue] | None = None):
        super().__init__(message)
        self.issues: list[GraphIssue] = list(issues or [])


class CycleError(GraphStructureError):
    """The edge set contains a directed cycle."""
    pass


class DanglingEdgeError(GraphStructureError):
    """An edge references a node or port that does not exist."""
    pass


class ConnectionRejectedError(ComputeFlowError):
    """A connect request was refused by the connection validator."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidStatusTransition(ComputeFlowError):
    """A node status change is not allowed by the state machine."""
    pass


class RunInProgressError(ComputeFlowError):
    """A run was requested while another run is still active."""
    pass


class PersistenceError(ComputeFlowError):
    """Storage or transport failure while saving or loading a graph."""
    pass


class GraphNotFoundError(PersistenceError):
    """No graph is stored under the requested id."""

    def __init__(self, graph_id: str):
        super().__init__(f"Graph not found: {graph_id}")
        self.graph_id = graph_id


class CorruptGraphError(PersistenceError):
    """A stored document could not be turned into a valid graph."""

    def __init__(self, message: str, issues: list[GraphIssue] | None = None):
        super().__init__(message)
        self.issues: list[GraphIssue] = list(issues or [])


class WorkerError(ComputeFlowError):
    """A node worker failed to produce a result."""
    pass


class AuthenticationError(WorkerError):
    """Generation backend rejected the credentials."""
    pass


class RateLimitError(WorkerError):
    """Generation backend rate limit exceeded."""
    retry_after: float | None = None


class WorkerTimeoutError(WorkerError):
    """A worker did not finish (or acknowledge cancellation) in time."""
    pass
