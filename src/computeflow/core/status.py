"""
Node Status - Lifecycle states and the guarded transition table.

Valid transitions:

    idle/dirty/failed/canceled --QUEUE--> queued --START--> running
    running --COMPLETE--> succeeded
    running --FAIL--> failed
    queued/running/idle/dirty/failed --CANCEL--> canceled
    succeeded/failed --INVALIDATE--> dirty
    anything settled --RESET--> idle
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from computeflow.core.errors import InvalidStatusTransition


class NodeStatus(Enum):
    """Status of a node (or edge) in the compute flow."""
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    DIRTY = "dirty"

    @property
    def is_terminal(self) -> bool:
        """True for states a run can end a node in."""
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.CANCELED)

    @property
    def needs_run(self) -> bool:
        """True if the node must be executed again on the next run."""
        return self in (
            NodeStatus.IDLE,
            NodeStatus.DIRTY,
            NodeStatus.FAILED,
            NodeStatus.CANCELED,
        )


@dataclass(frozen=True)
class StatusTransition:
    """A named, allowed status change."""
    action: str
    sources: frozenset[NodeStatus]
    target: NodeStatus
    description: str


VALID_TRANSITIONS: tuple[StatusTransition, ...] = (
    StatusTransition(
        "QUEUE",
        frozenset({NodeStatus.IDLE, NodeStatus.DIRTY, NodeStatus.FAILED, NodeStatus.CANCELED}),
        NodeStatus.QUEUED,
        "Node scheduled for execution",
    ),
    StatusTransition(
        "START",
        frozenset({NodeStatus.QUEUED}),
        NodeStatus.RUNNING,
        "Node execution has begun",
    ),
    StatusTransition(
        "COMPLETE",
        frozenset({NodeStatus.RUNNING}),
        NodeStatus.SUCCEEDED,
        "Node execution finished successfully",
    ),
    StatusTransition(
        "FAIL",
        frozenset({NodeStatus.RUNNING}),
        NodeStatus.FAILED,
        "Node execution encountered an error",
    ),
    StatusTransition(
        "CANCEL",
        frozenset({
            NodeStatus.QUEUED,
            NodeStatus.RUNNING,
            NodeStatus.IDLE,
            NodeStatus.DIRTY,
            NodeStatus.FAILED,
        }),
        NodeStatus.CANCELED,
        "Node canceled by the user or blocked by an upstream failure",
    ),
    StatusTransition(
        "INVALIDATE",
        frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED}),
        NodeStatus.DIRTY,
        "Node output invalidated due to upstream changes",
    ),
    StatusTransition(
        "RESET",
        frozenset({
            NodeStatus.DIRTY,
            NodeStatus.CANCELED,
            NodeStatus.FAILED,
            NodeStatus.SUCCEEDED,
            NodeStatus.QUEUED,
        }),
        NodeStatus.IDLE,
        "Node reset to initial state",
    ),
)


def find_transition(current: NodeStatus, target: NodeStatus) -> StatusTransition | None:
    """Get the transition that allows `current -> target`, if any."""
    for transition in VALID_TRANSITIONS:
        if transition.target == target and current in transition.sources:
            return transition
    return None


def valid_next_statuses(current: NodeStatus) -> list[NodeStatus]:
    """All statuses reachable from `current` in one step."""
    return [t.target for t in VALID_TRANSITIONS if current in t.sources]


def can_transition(current: NodeStatus, target: NodeStatus) -> bool:
    return current == target or find_transition(current, target) is not None


def guard_transition(
    current: NodeStatus,
    target: NodeStatus,
    node_id: str | None = None,
) -> None:
    """
    Raise InvalidStatusTransition unless `current -> target` is allowed.

    Same-status updates are always allowed (no-op).
    """
    if can_transition(current, target):
        return

    where = f" (node: {node_id})" if node_id else ""
    allowed = ", ".join(s.value for s in valid_next_statuses(current)) or "none"
    raise InvalidStatusTransition(
        f"Invalid transition{where}: {current.value} -> {target.value}. "
        f"From '{current.value}', valid transitions are: [{allowed}]."
    )
