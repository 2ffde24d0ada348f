"""
Tests for the HTTP generation worker and graph store against a local aiohttp app.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from computeflow.backends import HttpGenerationWorker, HttpGraphStore
from computeflow.core.errors import (
    AuthenticationError,
    GraphNotFoundError,
    PersistenceError,
    RateLimitError,
    WorkerError,
)
from computeflow.core.execution import WorkerContext
from computeflow.core.graph import Graph, Node
from computeflow.core.node_kinds import NodeKind
from computeflow.core.settings import EngineSettings


def _base_url(server: test_utils.TestServer) -> str:
    return str(server.make_url("/"))


class FakeBackend:
    """In-memory generation + graph document backend."""

    def __init__(self, job_states=None, generate_status=200):
        self.job_states = list(job_states or [])
        self.generate_status = generate_status
        self.requests: list[tuple[str, str]] = []
        self.bodies: list[dict] = []
        self.auth_headers: list[str | None] = []
        self.documents: dict[str, str] = {}

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/generate", self.generate)
        app.router.add_get("/jobs/{job_id}", self.job)
        app.router.add_delete("/jobs/{job_id}", self.cancel)
        app.router.add_get("/graphs", self.list_graphs)
        app.router.add_get("/graphs/{graph_id}", self.get_graph)
        app.router.add_put("/graphs/{graph_id}", self.put_graph)
        app.router.add_delete("/graphs/{graph_id}", self.delete_graph)
        return app

    def _seen(self, request: web.Request) -> None:
        self.requests.append((request.method, request.path))
        self.auth_headers.append(request.headers.get("Authorization"))

    async def generate(self, request: web.Request) -> web.Response:
        self._seen(request)
        self.bodies.append(await request.json())
        if self.generate_status == 429:
            return web.json_response({"error": "slow down"}, status=429, headers={"Retry-After": "7"})
        if self.generate_status != 200:
            return web.json_response({"error": {"message": "boom"}}, status=self.generate_status)
        if self.job_states:
            return web.json_response({"jobId": "job-1"})
        return web.json_response({"output": "https://cdn/img.png", "artifactRef": "https://cdn/img.png"})

    async def job(self, request: web.Request) -> web.Response:
        self._seen(request)
        state = self.job_states.pop(0) if len(self.job_states) > 1 else self.job_states[0]
        return web.json_response(state)

    async def cancel(self, request: web.Request) -> web.Response:
        self._seen(request)
        return web.Response(status=204)

    async def list_graphs(self, request: web.Request) -> web.Response:
        self._seen(request)
        return web.json_response({"ids": list(self.documents)})

    async def get_graph(self, request: web.Request) -> web.Response:
        self._seen(request)
        if request.headers.get("Authorization") == "Bearer wrong":
            return web.Response(status=401)
        document = self.documents.get(request.match_info["graph_id"])
        if document is None:
            return web.Response(status=404)
        return web.Response(text=document, content_type="application/json")

    async def put_graph(self, request: web.Request) -> web.Response:
        self._seen(request)
        self.documents[request.match_info["graph_id"]] = await request.text()
        return web.Response(status=204)

    async def delete_graph(self, request: web.Request) -> web.Response:
        self._seen(request)
        if self.documents.pop(request.match_info["graph_id"], None) is None:
            return web.Response(status=404)
        return web.Response(status=204)


def _ctx(progress=None) -> WorkerContext:
    return WorkerContext(
        run_id="run", node_id="node", on_progress=progress.append if progress is not None else None
    )


class TestHttpGenerationWorker:

    @pytest.mark.asyncio
    async def test_immediate_result(self):
        backend = FakeBackend()
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server), api_key="k1")

            result = await worker.invoke(
                NodeKind.IMAGE, {"model": "flux"}, {"prompt": "a fox"}, _ctx()
            )

        assert result.output == "https://cdn/img.png"
        assert result.artifact_ref == "https://cdn/img.png"
        assert backend.bodies == [{"kind": "Image", "params": {"model": "flux"}, "inputs": {"prompt": "a fox"}}]
        assert backend.auth_headers == ["Bearer k1"]

    @pytest.mark.asyncio
    async def test_polls_job_and_reports_progress(self):
        backend = FakeBackend(job_states=[
            {"status": "queued"},
            {"status": "running", "progress": 40},
            {"status": "succeeded", "progress": 100, "output": "https://cdn/v.mp4"},
        ])
        progress = []
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server), poll_interval=0.01)

            result = await worker.invoke(NodeKind.VIDEO, {}, {}, _ctx(progress))

        assert result.output == "https://cdn/v.mp4"
        assert result.artifact_ref is None
        assert progress == [40, 100]
        assert backend.requests.count(("GET", "/jobs/job-1")) == 3

    @pytest.mark.asyncio
    async def test_failed_job(self):
        backend = FakeBackend(job_states=[{"status": "failed", "error": "nsfw filter"}])
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server), poll_interval=0.01)

            with pytest.raises(WorkerError, match="nsfw filter"):
                await worker.invoke(NodeKind.IMAGE, {}, {}, _ctx())

    @pytest.mark.asyncio
    async def test_cancel_deletes_backend_job(self):
        backend = FakeBackend(job_states=[{"status": "running", "progress": 10}])
        ctx = _ctx()
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server), poll_interval=5.0)

            task = asyncio.create_task(worker.invoke(NodeKind.AUDIO, {}, {}, ctx))
            while ("GET", "/jobs/job-1") not in backend.requests:
                await asyncio.sleep(0.005)
            ctx.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert ("DELETE", "/jobs/job-1") in backend.requests

    @pytest.mark.asyncio
    async def test_authentication_error(self):
        backend = FakeBackend(generate_status=401)
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server))

            with pytest.raises(AuthenticationError):
                await worker.invoke(NodeKind.IMAGE, {}, {}, _ctx())

    @pytest.mark.asyncio
    async def test_rate_limit_error(self):
        backend = FakeBackend(generate_status=429)
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server))

            with pytest.raises(RateLimitError) as exc_info:
                await worker.invoke(NodeKind.IMAGE, {}, {}, _ctx())

        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_server_error_message(self):
        backend = FakeBackend(generate_status=500)
        async with test_utils.TestServer(backend.app()) as server:
            worker = HttpGenerationWorker(_base_url(server))

            with pytest.raises(WorkerError, match=r"HTTP 500\): boom"):
                await worker.invoke(NodeKind.IMAGE, {}, {}, _ctx())

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        worker = HttpGenerationWorker("http://127.0.0.1:9", request_timeout=2.0)

        with pytest.raises(WorkerError):
            await worker.invoke(NodeKind.IMAGE, {}, {}, _ctx())

    def test_from_settings(self):
        settings = EngineSettings(backend_url="http://gen.local/", api_key="abc", poll_interval=0.5)

        worker = HttpGenerationWorker.from_settings(settings)

        assert worker.base_url == "http://gen.local"
        assert worker.get_headers()["Authorization"] == "Bearer abc"
        assert worker.poll_interval == 0.5
        with pytest.raises(WorkerError):
            HttpGenerationWorker.from_settings(EngineSettings())


class TestHttpGraphStore:

    @pytest.mark.asyncio
    async def test_save_load_list_delete(self):
        backend = FakeBackend()
        graph = Graph()
        node = Node.create(NodeKind.PROMPT, params={"prompt": "hello"})
        graph.add_node(node)

        async with test_utils.TestServer(backend.app()) as server:
            store = HttpGraphStore(_base_url(server))

            await store.save("project 1", graph)
            loaded = await store.load("project 1")
            ids = await store.list_ids()
            assert await store.exists("project 1")
            await store.delete("project 1")
            assert not await store.exists("project 1")

        assert loaded.get_node(node.id).params["prompt"] == "hello"
        assert ids == ["project 1"]
        assert ("PUT", "/graphs/project 1") in backend.requests

    @pytest.mark.asyncio
    async def test_not_found(self):
        backend = FakeBackend()
        async with test_utils.TestServer(backend.app()) as server:
            store = HttpGraphStore(_base_url(server))

            with pytest.raises(GraphNotFoundError):
                await store.load("missing")

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        backend = FakeBackend()
        async with test_utils.TestServer(backend.app()) as server:
            store = HttpGraphStore(_base_url(server), api_key="wrong")

            with pytest.raises(PersistenceError, match="credentials"):
                await store.load("any")

    @pytest.mark.asyncio
    async def test_unserializable_graph_is_not_sent(self):
        backend = FakeBackend()
        graph = Graph()
        graph.add_node(Node.create(NodeKind.PROMPT, params={"prompt": {1, 2}}))

        async with test_utils.TestServer(backend.app()) as server:
            store = HttpGraphStore(_base_url(server))

            with pytest.raises(PersistenceError, match="cannot be serialized"):
                await store.save("g", graph)

        assert backend.requests == []
