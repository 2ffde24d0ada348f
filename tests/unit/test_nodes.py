"""
Tests for built-in node executors and the NodeWorker dispatch.
"""

import asyncio
import json

import pytest

from computeflow.core.errors import WorkerError
from computeflow.core.execution import RunStatus, Scheduler, WorkerContext, WorkerResult
from computeflow.core.graph import Graph, Node
from computeflow.core.node_kinds import NodeKind
from computeflow.core.status import NodeStatus
from computeflow.core.validation import connect
from computeflow.nodes import LOCAL_EXECUTORS, NodeWorker


def _ctx() -> WorkerContext:
    return WorkerContext(run_id="run", node_id="node")


class TestDispatch:

    def test_every_local_kind_is_routed(self):
        for kind in NodeKind:
            assert kind.is_generation or kind in LOCAL_EXECUTORS

    @pytest.mark.asyncio
    async def test_generation_without_backend_fails(self):
        with pytest.raises(WorkerError, match="no generation backend configured"):
            await NodeWorker().invoke(NodeKind.IMAGE, {}, {"prompt": "x"}, _ctx())

    @pytest.mark.asyncio
    async def test_generation_delegates(self):
        class FakeGenerator:
            async def invoke(self, kind, params, inputs, context):
                return WorkerResult(output=f"{kind.value}:{inputs['prompt']}", artifact_ref="ref")

        result = await NodeWorker(FakeGenerator()).invoke(
            NodeKind.AUDIO, {}, {"prompt": "rain"}, _ctx()
        )

        assert result.output == "Audio:rain"

    @pytest.mark.asyncio
    async def test_manual_inputs_fill_unconnected_ports(self):
        result = await NodeWorker().invoke(
            NodeKind.TRANSFORM,
            {"operation": "uppercase", "inputs": {"input": "manual"}},
            {},
            _ctx(),
        )
        assert result.output == "MANUAL"

    @pytest.mark.asyncio
    async def test_cancelled_context_stops_before_running(self):
        ctx = _ctx()
        ctx.cancel()
        with pytest.raises(asyncio.CancelledError):
            await NodeWorker().invoke(NodeKind.PROMPT, {"prompt": "x"}, {}, ctx)


class TestTextNodes:

    @pytest.mark.asyncio
    async def test_prompt(self):
        result = await NodeWorker().invoke(NodeKind.PROMPT, {"prompt": "a cat"}, {}, _ctx())
        assert result.output == "a cat"

    @pytest.mark.asyncio
    async def test_text_forwards_input(self):
        result = await NodeWorker().invoke(NodeKind.TEXT, {"text": ""}, {"input": "upstream"}, _ctx())
        assert result.output == "upstream"

    @pytest.mark.asyncio
    async def test_text_appends_context(self):
        result = await NodeWorker().invoke(
            NodeKind.TEXT, {"text": "base"}, {"context": ["one", 2, "two"]}, _ctx()
        )
        assert result.output == "base\n\none\n\ntwo"

    @pytest.mark.asyncio
    async def test_comment_has_no_output(self):
        result = await NodeWorker().invoke(NodeKind.COMMENT, {"text": "note"}, {}, _ctx())
        assert result.output is None


class TestUtilityNodes:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation,value,expected",
        [
            ("passthrough", ["Hi"], "Hi"),
            ("uppercase", ["Hi"], "HI"),
            ("lowercase", ["Hi", "There"], ["hi", "there"]),
            ("to_json", [{"a": 1}], json.dumps({"a": 1})),
        ],
    )
    async def test_transform(self, operation, value, expected):
        result = await NodeWorker().invoke(
            NodeKind.TRANSFORM, {"operation": operation}, {"input": value}, _ctx()
        )
        assert result.output == expected

    @pytest.mark.asyncio
    async def test_unknown_transform(self):
        with pytest.raises(WorkerError, match="Unknown transform operation"):
            await NodeWorker().invoke(NodeKind.TRANSFORM, {"operation": "rot13"}, {}, _ctx())

    @pytest.mark.asyncio
    async def test_combine_text(self):
        result = await NodeWorker().invoke(
            NodeKind.COMBINE, {}, {"inputs": ["first", {"x": 1}, "second"]}, _ctx()
        )
        assert result.output == "first\n\nsecond"

    @pytest.mark.asyncio
    async def test_combine_lists(self):
        result = await NodeWorker().invoke(NodeKind.COMBINE, {}, {"inputs": [[1, 2], [3]]}, _ctx())
        assert result.output == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_combine_other(self):
        result = await NodeWorker().invoke(NodeKind.COMBINE, {}, {"inputs": [{"a": 1}]}, _ctx())
        assert result.output == {"inputs": [{"a": 1}]}


class TestOutputNode:

    @pytest.mark.asyncio
    async def test_collects_artifacts(self):
        result = await NodeWorker().invoke(
            NodeKind.OUTPUT,
            {"format": "auto"},
            {"input": [{"meta": 1}, ["https://cdn/x.png", None], "https://cdn/y.mp4"]},
            _ctx(),
        )
        assert result.output == {
            "format": "auto",
            "artifacts": [{"meta": 1}, "https://cdn/x.png", "https://cdn/y.mp4"],
        }
        assert result.artifact_ref == "https://cdn/x.png"


@pytest.mark.asyncio
async def test_local_graph_end_to_end():
    graph = Graph()
    p1 = Node.create(NodeKind.PROMPT, params={"prompt": "a quiet harbor"})
    p2 = Node.create(NodeKind.PROMPT, params={"prompt": "at dawn"})
    combine = Node.create(NodeKind.COMBINE)
    upper = Node.create(NodeKind.TRANSFORM, params={"operation": "uppercase"})
    output = Node.create(NodeKind.OUTPUT)
    for node in (p1, p2, combine, upper, output):
        graph.add_node(node)
    for source, target in ((p1, combine), (p2, combine), (combine, upper), (upper, output)):
        connect(graph, source.id, source.outputs[0].id, target.id, target.inputs[0].id)

    summary = await Scheduler(NodeWorker()).execute(graph)

    assert summary.status == RunStatus.SUCCEEDED
    assert summary.outputs[upper.id] == "A QUIET HARBOR\n\nAT DAWN"
    assert summary.outputs[output.id]["artifacts"] == ["A QUIET HARBOR\n\nAT DAWN"]
    assert summary.node_statuses[output.id] == NodeStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_generation_node_fails_without_backend_and_blocks_output():
    graph = Graph()
    prompt = Node.create(NodeKind.PROMPT, params={"prompt": "x"})
    image = Node.create(NodeKind.IMAGE)
    output = Node.create(NodeKind.OUTPUT)
    for node in (prompt, image, output):
        graph.add_node(node)
    connect(graph, prompt.id, prompt.outputs[0].id, image.id, image.inputs[0].id)
    connect(graph, image.id, image.outputs[0].id, output.id, output.inputs[0].id)

    summary = await Scheduler(NodeWorker()).execute(graph)

    assert summary.node_statuses[image.id] == NodeStatus.FAILED
    assert summary.errors[image.id] == "no generation backend configured"
    assert summary.node_statuses[output.id] == NodeStatus.CANCELED


@pytest.mark.asyncio
async def test_text_accepts_single_manual_context():
    result = await NodeWorker().invoke(
        NodeKind.TEXT, {"text": "base", "inputs": {"context": "extra detail"}}, {}, _ctx()
    )
    assert result.output == "base\n\nextra detail"
