"""
Connection Validation - Rules deciding which edges may enter a graph.

validate_connection() checks a single connect request and returns the first
failing reason; connect() applies it. validate_graph() re-checks a whole
graph, e.g. after loading it from storage or before running it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from computeflow.core.data_types import compatible
from computeflow.core.errors import (
    ConnectionRejectedError,
    CycleError,
    DanglingEdgeError,
    GraphStructureError,
)
from computeflow.core.graph import Edge, EdgeId, Graph, NodeId, Port, PortId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionResult:
    """Outcome of validating a connect request."""
    ok: bool
    reason: str | None = None

    @classmethod
    def accepted(cls) -> ConnectionResult:
        return cls(ok=True)

    @classmethod
    def rejected(cls, reason: str) -> ConnectionResult:
        return cls(ok=False, reason=reason)

    def __bool__(self) -> bool:
        return self.ok


def _describe_direction(port: Port) -> str:
    return "input" if port.is_input else "output"


def validate_connection(
    graph: Graph,
    source_node_id: NodeId,
    source_port_id: PortId,
    target_node_id: NodeId,
    target_port_id: PortId,
) -> ConnectionResult:
    """
    Check whether a new edge source -> target may be added.

    Checks run in order and the first failing reason is returned:
    nodes exist, port directions, self-loop, duplicate edge, target
    capacity, type compatibility, cycle.
    """
    source_node = graph.get_node(source_node_id)
    target_node = graph.get_node(target_node_id)
    if source_node is None:
        return ConnectionResult.rejected(f"source node not found: {source_node_id}")
    if target_node is None:
        return ConnectionResult.rejected(f"target node not found: {target_node_id}")

    source_port = source_node.get_port(source_port_id)
    target_port = target_node.get_port(target_port_id)
    if source_port is None:
        return ConnectionResult.rejected(
            f"port {source_port_id} not found on {source_node.label}"
        )
    if target_port is None:
        return ConnectionResult.rejected(
            f"port {target_port_id} not found on {target_node.label}"
        )
    if not (source_port.is_output and target_port.is_input):
        return ConnectionResult.rejected(
            f"cannot connect {_describe_direction(source_port)} "
            f"to {_describe_direction(target_port)}"
        )

    if source_node_id == target_node_id:
        return ConnectionResult.rejected("cannot connect a node to itself")

    incoming = graph.incoming_edges(target_node_id, target_port_id)
    for edge in incoming:
        if edge.source.node_id == source_node_id and edge.source.port_id == source_port_id:
            return ConnectionResult.rejected("connection already exists")

    limit = target_port.max_connections
    if limit is not None and len(incoming) >= limit:
        return ConnectionResult.rejected(
            f"input '{target_port.name}' already has {len(incoming)} of "
            f"{limit} allowed connection(s)"
        )

    if not compatible(source_port.data_type, target_port.data_type):
        return ConnectionResult.rejected(
            f"incompatible data types: {source_port.data_type.value} "
            f"cannot feed {target_port.data_type.value}"
        )

    if graph.has_path(target_node_id, source_node_id):
        return ConnectionResult.rejected("would create a cycle")

    return ConnectionResult.accepted()


def connect(
    graph: Graph,
    source_node_id: NodeId,
    source_port_id: PortId,
    target_node_id: NodeId,
    target_port_id: PortId,
) -> Edge:
    """
    Validate and insert a new edge.

    The edge takes its data type from the source port and starts idle.

    Raises:
        ConnectionRejectedError: With the first failing reason.
    """
    result = validate_connection(
        graph, source_node_id, source_port_id, target_node_id, target_port_id
    )
    if not result:
        logger.debug(
            "Rejected %s/%s -> %s/%s: %s",
            source_node_id, source_port_id, target_node_id, target_port_id, result.reason,
        )
        raise ConnectionRejectedError(result.reason or "invalid connection")

    source_port = graph.get_node(source_node_id).get_port(source_port_id)
    edge = Edge.create(
        source_node_id,
        source_port_id,
        target_node_id,
        target_port_id,
        data_type=source_port.data_type,
    )
    graph.add_edge(edge)
    return edge


# --- Whole-graph checks ---


@dataclass(frozen=True)
class GraphIssue:
    """A single invariant violation found in a graph."""
    message: str
    edge_id: EdgeId | None = None
    node_id: NodeId | None = None
    port_id: PortId | None = None
    dangling: bool = False

    def __str__(self) -> str:
        where = [
            f"{label}={value}"
            for label, value in (
                ("edge", self.edge_id),
                ("node", self.node_id),
                ("port", self.port_id),
            )
            if value
        ]
        return f"{self.message} ({', '.join(where)})" if where else self.message


def validate_graph(graph: Graph) -> list[GraphIssue]:
    """
    Re-check every edge and the acyclicity of a graph.

    Returns all issues found; an empty list means the graph is valid.
    """
    issues: list[GraphIssue] = []
    seen_pairs: set[tuple[NodeId, PortId, NodeId, PortId]] = set()
    per_input: dict[tuple[NodeId, PortId], int] = {}

    for edge in graph.edges.values():
        source_node = graph.get_node(edge.source.node_id)
        target_node = graph.get_node(edge.target.node_id)
        if source_node is None:
            issues.append(GraphIssue(
                f"source node {edge.source.node_id} not found",
                edge_id=edge.id, node_id=edge.source.node_id, dangling=True,
            ))
            continue
        if target_node is None:
            issues.append(GraphIssue(
                f"target node {edge.target.node_id} not found",
                edge_id=edge.id, node_id=edge.target.node_id, dangling=True,
            ))
            continue

        source_port = source_node.get_port(edge.source.port_id)
        target_port = target_node.get_port(edge.target.port_id)
        if source_port is None:
            issues.append(GraphIssue(
                f"source port not found on {source_node.label}",
                edge_id=edge.id, node_id=source_node.id, port_id=edge.source.port_id,
                dangling=True,
            ))
            continue
        if target_port is None:
            issues.append(GraphIssue(
                f"target port not found on {target_node.label}",
                edge_id=edge.id, node_id=target_node.id, port_id=edge.target.port_id,
                dangling=True,
            ))
            continue

        if not source_port.is_output:
            issues.append(GraphIssue(
                "source must be an output port",
                edge_id=edge.id, node_id=source_node.id, port_id=source_port.id,
            ))
        if not target_port.is_input:
            issues.append(GraphIssue(
                "target must be an input port",
                edge_id=edge.id, node_id=target_node.id, port_id=target_port.id,
            ))
        if source_node.id == target_node.id:
            issues.append(GraphIssue(
                "edge connects a node to itself", edge_id=edge.id, node_id=source_node.id,
            ))

        pair = (source_node.id, source_port.id, target_node.id, target_port.id)
        if pair in seen_pairs:
            issues.append(GraphIssue("duplicate connection", edge_id=edge.id))
        seen_pairs.add(pair)

        key = (target_node.id, target_port.id)
        per_input[key] = per_input.get(key, 0) + 1
        limit = target_port.max_connections if target_port.is_input else None
        if limit is not None and per_input[key] > limit:
            issues.append(GraphIssue(
                f"input '{target_port.name}' exceeds {limit} connection(s)",
                edge_id=edge.id, node_id=target_node.id, port_id=target_port.id,
            ))

        if not compatible(source_port.data_type, target_port.data_type):
            issues.append(GraphIssue(
                f"incompatible data types: {source_port.data_type.value} "
                f"cannot feed {target_port.data_type.value}",
                edge_id=edge.id,
            ))
        if edge.data_type != source_port.data_type:
            issues.append(GraphIssue(
                f"edge data type {edge.data_type.value} does not match source port "
                f"type {source_port.data_type.value}",
                edge_id=edge.id,
            ))

    try:
        graph.execution_levels()
    except CycleError as e:
        issues.append(GraphIssue(str(e)))

    return issues


def ensure_valid_graph(graph: Graph) -> None:
    """
    Raise if the graph violates any structural invariant.

    Raises:
        CycleError: The graph contains a cycle (and nothing else is wrong).
        DanglingEdgeError: Some edge references a missing node or port.
        GraphStructureError: Any other violation.
    """
    issues = validate_graph(graph)
    if not issues:
        return

    summary = "; ".join(str(issue) for issue in issues)
    if any(issue.dangling for issue in issues):
        raise DanglingEdgeError(f"Dangling edges: {summary}", issues)
    if all(issue.edge_id is None for issue in issues):
        raise CycleError(summary, issues)
    raise GraphStructureError(f"Invalid graph: {summary}", issues)
