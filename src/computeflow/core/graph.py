"""
Graph Model - Core data structures for the compute flow.

This module defines the fundamental building blocks:
- Port: A typed input or output slot on a node
- Node: A unit of work with ports, parameters and a lifecycle status
- Edge: A directed link from an output port to an input port
- Graph: The complete set of nodes and edges for a project

Nodes and edges are treated as values: the scheduler and readers work on
copies obtained from Graph.snapshot(), and only the owning component
mutates the live graph.
"""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, NewType
from uuid import uuid4

from computeflow.core.data_types import DataType
from computeflow.core.errors import CycleError, DanglingEdgeError, GraphStructureError
from computeflow.core.node_kinds import NodeKind, kind_spec
from computeflow.core.status import NodeStatus, guard_transition


# Type aliases for clarity
NodeId = NewType("NodeId", str)
EdgeId = NewType("EdgeId", str)
PortId = NewType("PortId", str)


def new_node_id() -> NodeId:
    """Generate a new unique node ID."""
    return NodeId(str(uuid4()))


def new_edge_id() -> EdgeId:
    """Generate a new unique edge ID."""
    return EdgeId(str(uuid4()))


@dataclass
class Point2D:
    """2D point for node positioning on the canvas."""
    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: Point2D) -> Point2D:
        return Point2D(self.x + other.x, self.y + other.y)

    def __sub__(self, other: Point2D) -> Point2D:
        return Point2D(self.x - other.x, self.y - other.y)


class PortDirection(Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class Port:
    """
    A typed slot on a node.

    `max_connections` only applies to input ports; None means unbounded.
    Output ports always fan out freely.
    """
    id: PortId
    name: str
    data_type: DataType
    direction: PortDirection
    max_connections: int | None = 1

    @property
    def is_input(self) -> bool:
        return self.direction == PortDirection.INPUT

    @property
    def is_output(self) -> bool:
        return self.direction == PortDirection.OUTPUT


@dataclass(frozen=True)
class PortRef:
    """Reference to a port on a node."""
    node_id: NodeId
    port_id: PortId


@dataclass
class Edge:
    """
    A directed connection from one node's output port to another node's input.

    `data_type` is copied from the source port when the edge is created.
    """
    id: EdgeId
    source: PortRef
    target: PortRef
    data_type: DataType
    status: NodeStatus = NodeStatus.IDLE

    @classmethod
    def create(
        cls,
        source_node: NodeId,
        source_port: PortId,
        target_node: NodeId,
        target_port: PortId,
        data_type: DataType,
    ) -> Edge:
        """Factory method to create a new edge."""
        return cls(
            id=new_edge_id(),
            source=PortRef(source_node, source_port),
            target=PortRef(target_node, target_port),
            data_type=data_type,
        )


def build_ports(node_id: NodeId, kind: NodeKind) -> tuple[list[Port], list[Port]]:
    """Create the input and output ports for a node of the given kind."""
    spec = kind_spec(kind)
    inputs = [
        Port(
            id=PortId(f"{node_id}-input-{i}"),
            name=definition.name,
            data_type=definition.data_type,
            direction=PortDirection.INPUT,
            max_connections=definition.max_connections,
        )
        for i, definition in enumerate(spec.inputs)
    ]
    outputs = [
        Port(
            id=PortId(f"{node_id}-output-{i}"),
            name=definition.name,
            data_type=definition.data_type,
            direction=PortDirection.OUTPUT,
            max_connections=None,
        )
        for i, definition in enumerate(spec.outputs)
    ]
    return inputs, outputs


@dataclass
class Node:
    """
    A single node in the compute graph.

    Nodes have:
    - A unique ID and a kind
    - A label and position on the canvas
    - Parameter values
    - Input and output ports (stable for the node's lifetime)
    - Runtime state: status, progress, preview, error and the last output
    """
    id: NodeId
    kind: NodeKind
    label: str = ""
    position: Point2D = field(default_factory=Point2D)
    params: dict[str, Any] = field(default_factory=dict)
    inputs: list[Port] = field(default_factory=list)
    outputs: list[Port] = field(default_factory=list)

    # Runtime state (not serialized to the graph document)
    status: NodeStatus = NodeStatus.IDLE
    progress: int = 0
    preview: str | None = None
    error: str | None = None
    output: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        kind: NodeKind,
        position: Point2D | None = None,
        label: str | None = None,
        params: dict[str, Any] | None = None,
        node_id: NodeId | None = None,
    ) -> Node:
        """Factory method to create a node with the kind's port layout."""
        nid = node_id or new_node_id()
        inputs, outputs = build_ports(nid, kind)
        merged = dict(kind_spec(kind).default_params)
        merged.update(params or {})
        return cls(
            id=nid,
            kind=kind,
            label=label or f"{kind.value} Node",
            position=position or Point2D(),
            params=merged,
            inputs=inputs,
            outputs=outputs,
        )

    # --- Ports ---

    def get_port(self, port_id: str) -> Port | None:
        """Get an input or output port by ID."""
        for port in self.inputs:
            if port.id == port_id:
                return port
        for port in self.outputs:
            if port.id == port_id:
                return port
        return None

    def get_input(self, port_id: str) -> Port | None:
        for port in self.inputs:
            if port.id == port_id:
                return port
        return None

    def get_output(self, port_id: str) -> Port | None:
        for port in self.outputs:
            if port.id == port_id:
                return port
        return None

    def input_named(self, name: str) -> Port | None:
        for port in self.inputs:
            if port.name == name:
                return port
        return None

    def output_named(self, name: str) -> Port | None:
        for port in self.outputs:
            if port.name == name:
                return port
        return None

    # --- Parameters ---

    def get_param(self, name: str, default: Any = None) -> Any:
        """Get a parameter value."""
        return self.params.get(name, default)

    # --- Status ---

    def set_status(self, status: NodeStatus) -> None:
        """Change status through the state machine."""
        guard_transition(self.status, status, self.id)
        self.status = status

    def mark_succeeded(self, output: Any, preview: str | None) -> None:
        self.set_status(NodeStatus.SUCCEEDED)
        self.output = output
        self.preview = preview
        self.progress = 100
        self.error = None

    def mark_failed(self, message: str) -> None:
        self.set_status(NodeStatus.FAILED)
        self.error = message
        self.output = None

    def reset_runtime(self) -> None:
        """Drop all execution-time state (as after a fresh load)."""
        self.status = NodeStatus.IDLE
        self.progress = 0
        self.preview = None
        self.error = None
        self.output = None

    def copy(self) -> Node:
        """
        Copy the node for a snapshot.

        Definition fields are deep-copied; the cached output is shared.
        """
        return Node(
            id=self.id,
            kind=self.kind,
            label=self.label,
            position=Point2D(self.position.x, self.position.y),
            params=copy.deepcopy(self.params),
            inputs=list(self.inputs),
            outputs=list(self.outputs),
            status=self.status,
            progress=self.progress,
            preview=self.preview,
            error=self.error,
            output=self.output,
        )


class Graph:
    """
    The complete compute graph for a project.

    Contains nodes and the edges between them. Provides methods for graph
    manipulation and dependency analysis. Adding an edge checks that both
    endpoints exist with the right direction; the remaining connection rules
    (capacity, types, acyclicity) live in the connection validator.
    """

    def __init__(self) -> None:
        self._nodes: dict[NodeId, Node] = {}
        self._edges: dict[EdgeId, Edge] = {}

    # --- Node operations ---

    @property
    def nodes(self) -> dict[NodeId, Node]:
        """Get all nodes (read-only view)."""
        return self._nodes.copy()

    def add_node(self, node: Node) -> None:
        """Add a node to the graph."""
        if node.id in self._nodes:
            raise GraphStructureError(f"Duplicate node id: {node.id}")
        port_ids = [p.id for p in node.inputs] + [p.id for p in node.outputs]
        if len(port_ids) != len(set(port_ids)):
            raise GraphStructureError(f"Node {node.id} has duplicate port ids")
        self._nodes[node.id] = node

    def remove_node(self, node_id: NodeId) -> Node | None:
        """
        Remove a node and all its edges.

        Returns the removed node, or None if not found.
        """
        node = self._nodes.pop(node_id, None)
        if node:
            for edge in self.edges_of(node_id):
                del self._edges[edge.id]
        return node

    def get_node(self, node_id: NodeId) -> Node | None:
        """Get a node by ID."""
        return self._nodes.get(node_id)

    def change_node_kind(self, node_id: NodeId, kind: NodeKind) -> tuple[Node, list[Edge]]:
        """
        Recreate a node with a new kind.

        Ports are rebuilt from the new layout, so every edge attached to the
        old node is removed. Returns the new node and the removed edges.
        """
        old = self._nodes.get(node_id)
        if old is None:
            raise GraphStructureError(f"Node not found: {node_id}")

        removed = self.edges_of(node_id)
        for edge in removed:
            del self._edges[edge.id]

        node = Node.create(kind, position=old.position, label=old.label, node_id=old.id)
        self._nodes[node_id] = node
        return node, removed

    # --- Edge operations ---

    @property
    def edges(self) -> dict[EdgeId, Edge]:
        """Get all edges in connection order (read-only copy)."""
        return self._edges.copy()

    def add_edge(self, edge: Edge) -> None:
        """
        Insert an edge.

        Raises:
            DanglingEdgeError: If either endpoint does not reference an
                existing port of the right direction.
        """
        if edge.id in self._edges:
            raise GraphStructureError(f"Duplicate edge id: {edge.id}")

        source = self.find_port(edge.source)
        if source is None or not source.is_output:
            raise DanglingEdgeError(
                f"Edge {edge.id}: source {edge.source.node_id}/{edge.source.port_id} "
                "is not an output port"
            )
        target = self.find_port(edge.target)
        if target is None or not target.is_input:
            raise DanglingEdgeError(
                f"Edge {edge.id}: target {edge.target.node_id}/{edge.target.port_id} "
                "is not an input port"
            )

        self._edges[edge.id] = edge

    def remove_edge(self, edge_id: EdgeId) -> Edge | None:
        """Remove an edge by ID."""
        return self._edges.pop(edge_id, None)

    def get_edge(self, edge_id: EdgeId) -> Edge | None:
        return self._edges.get(edge_id)

    def find_port(self, ref: PortRef) -> Port | None:
        """Resolve a port reference, or None if it dangles."""
        node = self._nodes.get(ref.node_id)
        if node is None:
            return None
        return node.get_port(ref.port_id)

    def incoming_edges(self, node_id: NodeId, port_id: PortId | None = None) -> list[Edge]:
        """Get edges ending at a node (optionally at one input port)."""
        return [
            edge for edge in self._edges.values()
            if edge.target.node_id == node_id
            and (port_id is None or edge.target.port_id == port_id)
        ]

    def outgoing_edges(self, node_id: NodeId, port_id: PortId | None = None) -> list[Edge]:
        """Get edges leaving a node (optionally from one output port)."""
        return [
            edge for edge in self._edges.values()
            if edge.source.node_id == node_id
            and (port_id is None or edge.source.port_id == port_id)
        ]

    def edges_of(self, node_id: NodeId) -> list[Edge]:
        """Get every edge touching a node."""
        return [
            edge for edge in self._edges.values()
            if edge.source.node_id == node_id or edge.target.node_id == node_id
        ]

    # --- Graph analysis ---

    def _successors(self) -> dict[NodeId, list[NodeId]]:
        adjacency: dict[NodeId, list[NodeId]] = {nid: [] for nid in self._nodes}
        for edge in self._edges.values():
            if edge.source.node_id in adjacency:
                adjacency[edge.source.node_id].append(edge.target.node_id)
        return adjacency

    def _predecessors(self) -> dict[NodeId, list[NodeId]]:
        adjacency: dict[NodeId, list[NodeId]] = {nid: [] for nid in self._nodes}
        for edge in self._edges.values():
            if edge.target.node_id in adjacency:
                adjacency[edge.target.node_id].append(edge.source.node_id)
        return adjacency

    def upstream_nodes(self, node_id: NodeId) -> set[NodeId]:
        """Get all nodes that this node depends on (directly or indirectly)."""
        return _reachable(self._predecessors(), node_id)

    def downstream_nodes(self, node_id: NodeId) -> set[NodeId]:
        """Get all nodes that depend on this node (directly or indirectly)."""
        return _reachable(self._successors(), node_id)

    def has_path(self, start: NodeId, goal: NodeId) -> bool:
        """Check whether `goal` is reachable from `start` along edges."""
        return start == goal or goal in self.downstream_nodes(start)

    def execution_levels(self, node_ids: Iterable[NodeId] | None = None) -> list[list[NodeId]]:
        """
        Group nodes into dependency levels (Kahn's algorithm).

        Nodes within one level are mutually independent. When `node_ids` is
        given only that subset (and the edges among it) is considered.

        Raises:
            CycleError: If the considered subgraph contains a cycle.
        """
        members = set(self._nodes) if node_ids is None else set(node_ids) & set(self._nodes)
        in_degree: dict[NodeId, int] = {nid: 0 for nid in self._nodes if nid in members}
        successors: dict[NodeId, list[NodeId]] = {nid: [] for nid in in_degree}

        for edge in self._edges.values():
            src, dst = edge.source.node_id, edge.target.node_id
            if src in in_degree and dst in in_degree:
                in_degree[dst] += 1
                successors[src].append(dst)

        levels: list[list[NodeId]] = []
        current = [nid for nid, degree in in_degree.items() if degree == 0]
        placed = 0

        while current:
            levels.append(current)
            placed += len(current)
            following: list[NodeId] = []
            for nid in current:
                for dst in successors[nid]:
                    in_degree[dst] -= 1
                    if in_degree[dst] == 0:
                        following.append(dst)
            current = following

        if placed != len(in_degree):
            stuck = sorted(nid for nid, degree in in_degree.items() if degree > 0)
            raise CycleError(
                f"Graph contains a cycle through {len(stuck)} node(s): {', '.join(stuck)}"
            )

        return levels

    def execution_order(self, node_ids: Iterable[NodeId] | None = None) -> list[NodeId]:
        """
        Get nodes in topological order for execution.

        Raises:
            CycleError: If the graph contains a cycle.
        """
        return [nid for level in self.execution_levels(node_ids) for nid in level]

    def output_nodes(self) -> list[Node]:
        """Get nodes with no outgoing edges."""
        sources = {edge.source.node_id for edge in self._edges.values()}
        return [node for nid, node in self._nodes.items() if nid not in sources]

    def invalidate_from(self, node_id: NodeId, include_self: bool = True) -> set[NodeId]:
        """
        Mark a node and its downstream nodes as dirty.

        Only nodes with a settled result (succeeded or failed) change; the
        rest already need a run. Returns the set of invalidated node IDs.
        """
        candidates = self.downstream_nodes(node_id)
        if include_self:
            candidates.add(node_id)

        invalidated: set[NodeId] = set()
        for nid in candidates:
            node = self._nodes.get(nid)
            if node and node.status in (NodeStatus.SUCCEEDED, NodeStatus.FAILED):
                node.set_status(NodeStatus.DIRTY)
                invalidated.add(nid)
        return invalidated

    # --- Utility ---

    def snapshot(self) -> Graph:
        """Return an independent copy of the graph."""
        clone = Graph()
        for nid, node in self._nodes.items():
            clone._nodes[nid] = node.copy()
        for eid, edge in self._edges.items():
            clone._edges[eid] = Edge(
                id=edge.id,
                source=edge.source,
                target=edge.target,
                data_type=edge.data_type,
                status=edge.status,
            )
        return clone

    def clear(self) -> None:
        """Remove all nodes and edges."""
        self._nodes.clear()
        self._edges.clear()

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        """Check if a node exists in the graph."""
        return node_id in self._nodes


def _reachable(adjacency: dict[NodeId, list[NodeId]], start: NodeId) -> set[NodeId]:
    seen: set[NodeId] = set()
    queue = deque(adjacency.get(start, []))
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(adjacency.get(current, []))
    seen.discard(start)
    return seen
