"""
Edit History - Bounded undo/redo over graph definitions.

Snapshots hold the serialized definition only. A push that differs from
the current snapshot in nothing but node positions is ignored, so dragging
a node around does not flood the history.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from computeflow.core.graph import Graph
from computeflow.core.persistence import graph_from_dict, graph_to_dict


@dataclass
class HistorySnapshot:
    """A recorded graph definition."""
    document: dict[str, Any]
    description: str | None = None
    timestamp: float = field(default_factory=time.time)

    def restore(self) -> Graph:
        """Build a fresh (all idle) graph from this snapshot."""
        return graph_from_dict(self.document)


def _node_signature(node: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in node.items() if key != "position"}


def _edge_signature(edge: dict[str, Any]) -> tuple[str, str, str, str]:
    return (
        edge["source"]["nodeId"],
        edge["source"]["portId"],
        edge["target"]["nodeId"],
        edge["target"]["portId"],
    )


def meaningfully_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """True if two documents differ in more than node positions."""
    old_nodes = {n["id"]: _node_signature(n) for n in old["nodes"]}
    new_nodes = {n["id"]: _node_signature(n) for n in new["nodes"]}
    if old_nodes != new_nodes:
        return True
    old_edges = {_edge_signature(e) for e in old["edges"]}
    new_edges = {_edge_signature(e) for e in new["edges"]}
    return old_edges != new_edges or len(old["edges"]) != len(new["edges"])


class GraphHistory:
    """
    Linear undo/redo history with a fixed number of snapshots.

    The snapshot at the cursor is the current state; undo() and redo() move
    the cursor and return the snapshot to restore. Pushing after an undo
    discards the redo branch.
    """

    def __init__(self, limit: int = 10):
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.limit = limit
        self._snapshots: list[HistorySnapshot] = []
        self._index = -1

    def push(self, graph: Graph, description: str | None = None) -> bool:
        """
        Record the graph's current definition.

        Returns:
            True if a snapshot was recorded, False if nothing meaningful changed
        """
        document = graph_to_dict(graph)
        if self._index >= 0 and not meaningfully_changed(
            self._snapshots[self._index].document, document
        ):
            return False

        del self._snapshots[self._index + 1:]
        self._snapshots.append(HistorySnapshot(document, description))
        self._index += 1

        if len(self._snapshots) > self.limit:
            self._snapshots.pop(0)
            self._index -= 1
        return True

    def undo(self) -> HistorySnapshot | None:
        if not self.can_undo:
            return None
        self._index -= 1
        return self._snapshots[self._index]

    def redo(self) -> HistorySnapshot | None:
        if not self.can_redo:
            return None
        self._index += 1
        return self._snapshots[self._index]

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._snapshots) - 1

    @property
    def current(self) -> HistorySnapshot | None:
        return self._snapshots[self._index] if self._index >= 0 else None

    def clear(self) -> None:
        self._snapshots.clear()
        self._index = -1

    def __len__(self) -> int:
        return len(self._snapshots)
