"""
Tests for the graph module.
"""

import pytest

from computeflow.core.data_types import DataType
from computeflow.core.errors import (
    CycleError,
    DanglingEdgeError,
    GraphStructureError,
    InvalidStatusTransition,
)
from computeflow.core.graph import (
    Edge,
    Graph,
    Node,
    Point2D,
    PortRef,
    new_node_id,
)
from computeflow.core.node_kinds import NodeKind
from computeflow.core.status import NodeStatus


def _link(graph: Graph, source: Node, target: Node, target_input: str | None = None) -> Edge:
    """Insert an edge from the first output of `source` to an input of `target`."""
    out_port = source.outputs[0]
    in_port = target.input_named(target_input) if target_input else target.inputs[0]
    edge = Edge.create(source.id, out_port.id, target.id, in_port.id, out_port.data_type)
    graph.add_edge(edge)
    return edge


class TestPoint2D:
    """Tests for Point2D dataclass."""

    def test_default_values(self):
        p = Point2D()
        assert p.x == 0.0
        assert p.y == 0.0

    def test_addition(self):
        result = Point2D(10, 20) + Point2D(5, 10)
        assert (result.x, result.y) == (15, 30)

    def test_subtraction(self):
        result = Point2D(10, 20) - Point2D(5, 10)
        assert (result.x, result.y) == (5, 10)


class TestNode:
    """Tests for Node dataclass."""

    def test_create_node_builds_ports_from_kind(self):
        node = Node.create(NodeKind.IMAGE)
        assert [p.name for p in node.inputs] == ["prompt", "reference", "mask"]
        assert [p.name for p in node.outputs] == ["image"]
        assert node.inputs[0].id == f"{node.id}-input-0"
        assert node.outputs[0].id == f"{node.id}-output-0"
        assert node.status == NodeStatus.IDLE

    def test_default_label_and_params(self):
        node = Node.create(NodeKind.TRANSFORM)
        assert node.label == "Transform Node"
        assert node.get_param("operation") == "passthrough"

    def test_params_override_defaults(self):
        node = Node.create(NodeKind.TRANSFORM, params={"operation": "uppercase"})
        assert node.get_param("operation") == "uppercase"

    def test_get_param_default(self):
        node = Node.create(NodeKind.PROMPT)
        assert node.get_param("missing", "default") == "default"

    def test_output_ports_are_unbounded(self):
        node = Node.create(NodeKind.PROMPT)
        assert node.outputs[0].max_connections is None
        assert node.outputs[0].is_output

    def test_set_status_is_guarded(self):
        node = Node.create(NodeKind.PROMPT)
        with pytest.raises(InvalidStatusTransition):
            node.set_status(NodeStatus.SUCCEEDED)

    def test_mark_succeeded(self):
        node = Node.create(NodeKind.PROMPT)
        node.set_status(NodeStatus.QUEUED)
        node.set_status(NodeStatus.RUNNING)
        node.mark_succeeded("hello", "ref://1")
        assert node.status == NodeStatus.SUCCEEDED
        assert node.output == "hello"
        assert node.preview == "ref://1"
        assert node.progress == 100

    def test_copy_is_independent(self):
        node = Node.create(NodeKind.PROMPT, params={"prompt": "a"})
        clone = node.copy()
        clone.params["prompt"] = "b"
        clone.position.x = 50
        assert node.params["prompt"] == "a"
        assert node.position.x == 0


class TestGraph:
    """Tests for Graph class."""

    def test_create_empty_graph(self):
        graph = Graph()
        assert len(graph) == 0
        assert graph.edges == {}

    def test_add_node(self):
        graph = Graph()
        node = Node.create(NodeKind.PROMPT)
        graph.add_node(node)
        assert len(graph) == 1
        assert node.id in graph

    def test_add_duplicate_node_rejected(self):
        graph = Graph()
        node = Node.create(NodeKind.PROMPT)
        graph.add_node(node)
        with pytest.raises(GraphStructureError):
            graph.add_node(node)

    def test_add_edge(self):
        graph = Graph()
        prompt = Node.create(NodeKind.PROMPT)
        image = Node.create(NodeKind.IMAGE)
        graph.add_node(prompt)
        graph.add_node(image)

        edge = _link(graph, prompt, image)

        assert list(graph.edges) == [edge.id]
        assert graph.incoming_edges(image.id) == [edge]
        assert graph.outgoing_edges(prompt.id) == [edge]

    def test_add_edge_with_missing_node_rejected(self):
        graph = Graph()
        node = Node.create(NodeKind.IMAGE)
        graph.add_node(node)

        edge = Edge.create(new_node_id(), "x", node.id, node.inputs[0].id, DataType.TEXT)
        with pytest.raises(DanglingEdgeError):
            graph.add_edge(edge)
        assert graph.edges == {}

    def test_add_edge_into_output_port_rejected(self):
        graph = Graph()
        a = Node.create(NodeKind.PROMPT)
        b = Node.create(NodeKind.PROMPT)
        graph.add_node(a)
        graph.add_node(b)

        edge = Edge.create(a.id, a.outputs[0].id, b.id, b.outputs[0].id, DataType.TEXT)
        with pytest.raises(DanglingEdgeError):
            graph.add_edge(edge)

    def test_remove_node_removes_edges(self):
        graph = Graph()
        prompt = Node.create(NodeKind.PROMPT)
        image = Node.create(NodeKind.IMAGE)
        graph.add_node(prompt)
        graph.add_node(image)
        _link(graph, prompt, image)

        removed = graph.remove_node(prompt.id)

        assert removed is prompt
        assert graph.edges == {}

    def test_change_node_kind_removes_attached_edges(self):
        graph = Graph()
        prompt = Node.create(NodeKind.PROMPT)
        image = Node.create(NodeKind.IMAGE, position=Point2D(10, 20), label="Hero")
        graph.add_node(prompt)
        graph.add_node(image)
        edge = _link(graph, prompt, image)

        node, removed = graph.change_node_kind(image.id, NodeKind.VIDEO)

        assert removed == [edge]
        assert graph.edges == {}
        assert node.id == image.id
        assert node.kind == NodeKind.VIDEO
        assert node.label == "Hero"
        assert [p.name for p in node.inputs] == ["image", "prompt"]

    def test_find_port(self):
        graph = Graph()
        node = Node.create(NodeKind.PROMPT)
        graph.add_node(node)
        assert graph.find_port(PortRef(node.id, node.outputs[0].id)) == node.outputs[0]
        assert graph.find_port(PortRef(node.id, "nope")) is None

    def test_execution_order_simple(self):
        graph = Graph()
        prompt = Node.create(NodeKind.PROMPT)
        image = Node.create(NodeKind.IMAGE)
        output = Node.create(NodeKind.OUTPUT)
        for node in (output, image, prompt):
            graph.add_node(node)

        _link(graph, prompt, image)
        _link(graph, image, output)

        order = graph.execution_order()
        assert order.index(prompt.id) < order.index(image.id) < order.index(output.id)

    def test_execution_levels_group_independent_nodes(self):
        graph = Graph()
        a = Node.create(NodeKind.PROMPT)
        b = Node.create(NodeKind.PROMPT)
        combine = Node.create(NodeKind.COMBINE)
        for node in (a, b, combine):
            graph.add_node(node)
        _link(graph, a, combine)
        _link(graph, b, combine)

        levels = graph.execution_levels()

        assert len(levels) == 2
        assert set(levels[0]) == {a.id, b.id}
        assert levels[1] == [combine.id]

    def test_cycle_detection(self):
        graph = Graph()
        a = Node.create(NodeKind.TRANSFORM)
        b = Node.create(NodeKind.TRANSFORM)
        graph.add_node(a)
        graph.add_node(b)
        _link(graph, a, b)
        # add_edge only checks port references; the validator blocks cycles
        _link(graph, b, a)

        with pytest.raises(CycleError):
            graph.execution_order()

    def test_upstream_and_downstream(self):
        graph = Graph()
        a = Node.create(NodeKind.PROMPT)
        b = Node.create(NodeKind.TEXT)
        c = Node.create(NodeKind.OUTPUT)
        for node in (a, b, c):
            graph.add_node(node)
        _link(graph, a, b)
        _link(graph, b, c)

        assert graph.upstream_nodes(c.id) == {a.id, b.id}
        assert graph.downstream_nodes(a.id) == {b.id, c.id}
        assert graph.has_path(a.id, c.id)
        assert not graph.has_path(c.id, a.id)

    def test_output_nodes(self):
        graph = Graph()
        a = Node.create(NodeKind.PROMPT)
        b = Node.create(NodeKind.OUTPUT)
        graph.add_node(a)
        graph.add_node(b)
        _link(graph, a, b)
        assert graph.output_nodes() == [b]

    def test_invalidate_from_only_touches_settled_nodes(self):
        graph = Graph()
        a = Node.create(NodeKind.PROMPT)
        b = Node.create(NodeKind.TEXT)
        c = Node.create(NodeKind.OUTPUT)
        for node in (a, b, c):
            graph.add_node(node)
        _link(graph, a, b)
        _link(graph, b, c)
        a.status = NodeStatus.SUCCEEDED
        b.status = NodeStatus.FAILED
        c.status = NodeStatus.IDLE

        invalidated = graph.invalidate_from(a.id)

        assert invalidated == {a.id, b.id}
        assert a.status == NodeStatus.DIRTY
        assert b.status == NodeStatus.DIRTY
        assert c.status == NodeStatus.IDLE

    def test_snapshot_is_independent(self):
        graph = Graph()
        node = Node.create(NodeKind.PROMPT, params={"prompt": "a"})
        graph.add_node(node)

        snapshot = graph.snapshot()
        snapshot.get_node(node.id).params["prompt"] = "b"
        snapshot.remove_node(node.id)

        assert graph.get_node(node.id).params["prompt"] == "a"
        assert len(graph) == 1

    def test_edges_keep_insertion_order(self):
        graph = Graph()
        sources = [Node.create(NodeKind.PROMPT) for _ in range(3)]
        combine = Node.create(NodeKind.COMBINE)
        for node in [*sources, combine]:
            graph.add_node(node)

        edges = [_link(graph, s, combine) for s in reversed(sources)]

        assert list(graph.edges) == [e.id for e in edges]
        assert graph.incoming_edges(combine.id) == edges
