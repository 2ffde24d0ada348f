"""
Execution Engine - Async DAG scheduler for compute graphs.

This module runs a graph snapshot with:
- Dependency-driven scheduling (a node starts once every producer succeeded)
- Bounded concurrency for worker calls
- Streaming status and progress callbacks
- Failure containment (dependents of a failed node are canceled)
- Cooperative cancellation with a grace period
- Incremental re-runs (succeeded nodes without stale inputs are reused)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Protocol, runtime_checkable
from uuid import uuid4

from computeflow.core.errors import GraphStructureError
from computeflow.core.graph import Graph, Node, NodeId, Port
from computeflow.core.node_kinds import NodeKind
from computeflow.core.settings import EngineSettings
from computeflow.core.status import NodeStatus
from computeflow.core.validation import ensure_valid_graph

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    """Status of a whole run."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass
class WorkerResult:
    """
    What a worker returns for one node.

    Attributes:
        output: The produced value. Nodes with several output ports return
            a dict keyed by port name.
        artifact_ref: Reference to a stored artifact (URL, path, ...) used
            as the node preview.
    """
    output: Any
    artifact_ref: str | None = None


class WorkerContext:
    """
    Context passed to the worker for one node execution.

    Provides:
    - Progress reporting (0..100)
    - The cooperative cancellation signal
    """

    def __init__(
        self,
        run_id: str,
        node_id: NodeId,
        on_progress: Callable[[int], None] | None = None,
    ):
        self.run_id = run_id
        self.node_id = node_id
        self._on_progress = on_progress
        self._cancel_event = asyncio.Event()
        self._active = True

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def check_cancelled(self) -> None:
        """Raise if cancelled. Workers call this to acknowledge cancellation."""
        if self._cancel_event.is_set():
            raise asyncio.CancelledError("Execution cancelled")

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def report_progress(self, percent: float) -> None:
        """Report progress to listeners (clamped to 0..100)."""
        if not self._active or self._on_progress is None:
            return
        self._on_progress(max(0, min(100, int(percent))))

    def close(self) -> None:
        """Stop forwarding progress (the node has reached a final state)."""
        self._active = False


@runtime_checkable
class Worker(Protocol):
    """Protocol for the capability that actually executes nodes."""

    async def invoke(
        self,
        kind: NodeKind,
        params: dict[str, Any],
        inputs: dict[str, Any],
        context: WorkerContext,
    ) -> WorkerResult:
        """
        Execute one node.

        Args:
            kind: The node kind
            params: Node parameter values
            inputs: Resolved input values by input port name
            context: Progress reporting and cancellation signal

        Returns:
            WorkerResult with the output and optional artifact reference

        Raises:
            asyncio.CancelledError: To acknowledge a cancellation request
            Exception: Any other error fails the node
        """
        ...


@dataclass
class NodeStatusEvent:
    """A node changed status during a run."""
    run_id: str
    node_id: NodeId
    status: NodeStatus
    progress: int = 0
    preview: str | None = None
    error: str | None = None
    output: Any = field(default=None, repr=False)


@dataclass
class NodeProgressEvent:
    """A running node reported progress."""
    run_id: str
    node_id: NodeId
    progress: int


@dataclass
class RunSummary:
    """Final report of a run."""
    run_id: str
    status: RunStatus
    node_statuses: dict[NodeId, NodeStatus]
    errors: dict[NodeId, str] = field(default_factory=dict)
    outputs: dict[NodeId, Any] = field(default_factory=dict)
    started_at: float = 0.0
    finished_at: float = 0.0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def nodes_with_status(self, status: NodeStatus) -> list[NodeId]:
        return [nid for nid, s in self.node_statuses.items() if s == status]


@dataclass
class ExecutionRun:
    """
    One execution attempt over a graph snapshot.

    Not persisted; the snapshot's nodes carry the per-node status.
    """
    id: str
    graph: Graph
    scope: list[NodeId]
    to_run: list[NodeId]
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    cancel_requested: bool = False
    status: RunStatus = RunStatus.RUNNING

    @property
    def per_node_status(self) -> dict[NodeId, NodeStatus]:
        return {nid: self.graph.get_node(nid).status for nid in self.scope}


StatusCallback = Callable[[NodeStatusEvent], None]
ProgressCallback = Callable[[NodeProgressEvent], None]
CompletionCallback = Callable[[RunSummary], None]


def plan_run(
    graph: Graph,
    targets: Iterable[NodeId] | None = None,
) -> tuple[list[NodeId], list[NodeId]]:
    """
    Work out what a run has to do.

    Returns:
        (scope, to_run): `scope` is every node feeding the targets (or the
        whole graph) in topological order; `to_run` is the subset that must
        execute, i.e. nodes that are not cleanly succeeded plus everything
        downstream of them within the scope.

    Raises:
        GraphStructureError: Unknown target node.
        CycleError: The scope contains a cycle.
    """
    if targets:
        scope_ids: set[NodeId] = set()
        for nid in targets:
            if nid not in graph:
                raise GraphStructureError(f"Unknown target node: {nid}")
            scope_ids.add(nid)
            scope_ids |= graph.upstream_nodes(nid)
        scope = graph.execution_order(scope_ids)
    else:
        scope = graph.execution_order()

    scope_set = set(scope)
    stale = {
        nid for nid in scope
        if graph.get_node(nid).status != NodeStatus.SUCCEEDED
    }
    affected = set(stale)
    for nid in stale:
        affected |= graph.downstream_nodes(nid) & scope_set

    return scope, [nid for nid in scope if nid in affected]


@dataclass
class _Outcome:
    status: NodeStatus
    result: WorkerResult | None = None
    error: str | None = None


class _RunDriver:
    """Drives one ExecutionRun to completion."""

    def __init__(
        self,
        run: ExecutionRun,
        worker: Worker,
        settings: EngineSettings,
        on_node_status: StatusCallback | None,
        on_node_progress: ProgressCallback | None,
        on_run_complete: CompletionCallback | None,
    ):
        self.run = run
        self._worker = worker
        self._settings = settings
        self._on_node_status = on_node_status
        self._on_node_progress = on_node_progress
        self._on_run_complete = on_run_complete
        self._contexts: dict[NodeId, WorkerContext] = {}
        self._to_run = set(run.to_run)
        self._launched: set[NodeId] = set()
        # Canceled during this run, as opposed to left canceled by an earlier one
        self._blocked: set[NodeId] = set()
        self._slots = (
            asyncio.Semaphore(settings.max_in_flight)
            if settings.max_in_flight
            else None
        )

    # --- Notifications ---

    def _emit(self, callback: Callable[[Any], None] | None, event: Any) -> None:
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            logger.exception("Run %s: subscriber callback failed", self.run.id)

    def _set_status(self, node: Node, status: NodeStatus) -> None:
        if node.status == status:
            return
        node.set_status(status)
        for edge in self.run.graph.incoming_edges(node.id):
            edge.status = status
        logger.debug("Run %s: node %s -> %s", self.run.id, node.id, status.value)
        self._emit(self._on_node_status, NodeStatusEvent(
            run_id=self.run.id,
            node_id=node.id,
            status=status,
            progress=node.progress,
            preview=node.preview,
            error=node.error,
            output=node.output if status == NodeStatus.SUCCEEDED else None,
        ))

    def _progress(self, node: Node, percent: int) -> None:
        if node.status != NodeStatus.RUNNING:
            return
        node.progress = percent
        self._emit(self._on_node_progress, NodeProgressEvent(self.run.id, node.id, percent))

    # --- Cancellation ---

    def cancel(self) -> None:
        if self.run.cancel_requested:
            return
        self.run.cancel_requested = True
        logger.info("Run %s: cancellation requested", self.run.id)

        for nid in self.run.to_run:
            node = self.run.graph.get_node(nid)
            if node.status == NodeStatus.QUEUED or (
                nid not in self._launched and node.status.needs_run
            ):
                self._blocked.add(nid)
                self._set_status(node, NodeStatus.CANCELED)

        for context in list(self._contexts.values()):
            context.cancel()

    def _block_downstream(self, failed_id: NodeId) -> None:
        failed = self.run.graph.get_node(failed_id)
        for nid in self.run.graph.downstream_nodes(failed_id) & self._to_run:
            node = self.run.graph.get_node(nid)
            if nid in self._blocked or node.status in (NodeStatus.SUCCEEDED, NodeStatus.RUNNING):
                continue
            self._blocked.add(nid)
            node.error = f"Upstream node '{failed.label}' failed"
            self._set_status(node, NodeStatus.CANCELED)

    # --- Scheduling ---

    async def drive(self) -> RunSummary:
        run = self.run
        graph = run.graph
        logger.info(
            "Run %s: starting (%d node(s) in scope, %d to execute)",
            run.id, len(run.scope), len(run.to_run),
        )

        try:
            pending: dict[NodeId, set[NodeId]] = {
                nid: {
                    edge.source.node_id
                    for edge in graph.incoming_edges(nid)
                    if edge.source.node_id in self._to_run
                }
                for nid in run.to_run
            }
            dependents: dict[NodeId, list[NodeId]] = {nid: [] for nid in run.to_run}
            for nid, producers in pending.items():
                for producer in producers:
                    dependents[producer].append(nid)

            tasks: dict[asyncio.Task, NodeId] = {}

            def launch(nid: NodeId) -> None:
                node = graph.get_node(nid)
                node.error = None
                self._set_status(node, NodeStatus.QUEUED)
                self._launched.add(nid)
                tasks[asyncio.create_task(self._run_node(node))] = nid

            for nid in run.to_run:
                if not pending[nid] and not run.cancel_requested:
                    launch(nid)

            while tasks:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    nid = tasks.pop(task)
                    task.result()
                    node = graph.get_node(nid)
                    if node.status == NodeStatus.SUCCEEDED:
                        for child in dependents[nid]:
                            pending[child].discard(nid)
                            if (
                                not pending[child]
                                and not run.cancel_requested
                                and child not in self._launched
                                and child not in self._blocked
                            ):
                                launch(child)
                    elif node.status == NodeStatus.FAILED:
                        self._block_downstream(nid)

            for nid in run.to_run:
                node = graph.get_node(nid)
                if not node.status.is_terminal:
                    self._set_status(node, NodeStatus.CANCELED)

            error = None
        except Exception as e:
            logger.exception("Run %s: scheduler error", run.id)
            error = f"Scheduler error: {e}"
            for context in self._contexts.values():
                context.cancel()

        return self._finish(error)

    def _finish(self, error: str | None) -> RunSummary:
        run = self.run
        statuses = run.per_node_status
        if error is not None:
            run.status = RunStatus.FAILED
        elif run.cancel_requested:
            run.status = RunStatus.CANCELED
        elif any(s == NodeStatus.FAILED for s in statuses.values()):
            run.status = RunStatus.FAILED
        else:
            run.status = RunStatus.SUCCEEDED
        run.finished_at = time.time()

        nodes = [run.graph.get_node(nid) for nid in run.scope]
        summary = RunSummary(
            run_id=run.id,
            status=run.status,
            node_statuses=statuses,
            errors={n.id: n.error for n in nodes if n.status == NodeStatus.FAILED and n.error},
            outputs={n.id: n.output for n in nodes if n.status == NodeStatus.SUCCEEDED},
            started_at=run.started_at,
            finished_at=run.finished_at,
            error=error,
        )
        logger.info(
            "Run %s: %s in %.2fs (%d succeeded, %d failed, %d canceled)",
            run.id,
            run.status.value,
            summary.duration,
            len(summary.nodes_with_status(NodeStatus.SUCCEEDED)),
            len(summary.nodes_with_status(NodeStatus.FAILED)),
            len(summary.nodes_with_status(NodeStatus.CANCELED)),
        )
        self._emit(self._on_run_complete, summary)
        return summary

    # --- Node execution ---

    def _slot(self):
        return self._slots if self._slots is not None else contextlib.nullcontext()

    async def _run_node(self, node: Node) -> None:
        async with self._slot():
            if node.status != NodeStatus.QUEUED or self.run.cancel_requested:
                return

            context = WorkerContext(
                self.run.id,
                node.id,
                on_progress=lambda percent: self._progress(node, percent),
            )
            self._contexts[node.id] = context
            node.progress = 0
            self._set_status(node, NodeStatus.RUNNING)
            self._invalidate_downstream(node)

            try:
                inputs = self._resolve_inputs(node)
                outcome = await self._invoke(node, inputs, context)
            finally:
                context.close()
                self._contexts.pop(node.id, None)

            if outcome.status == NodeStatus.SUCCEEDED:
                result = outcome.result
                node.mark_succeeded(result.output, result.artifact_ref)
                for edge in self.run.graph.incoming_edges(node.id):
                    edge.status = NodeStatus.SUCCEEDED
                self._emit(self._on_node_status, NodeStatusEvent(
                    run_id=self.run.id,
                    node_id=node.id,
                    status=NodeStatus.SUCCEEDED,
                    progress=100,
                    preview=node.preview,
                    output=node.output,
                ))
            elif outcome.status == NodeStatus.FAILED:
                logger.warning("Run %s: node %s failed: %s", self.run.id, node.id, outcome.error)
                node.error = outcome.error
                node.output = None
                self._set_status(node, NodeStatus.FAILED)
            else:
                self._set_status(node, NodeStatus.CANCELED)

    def _invalidate_downstream(self, node: Node) -> None:
        for nid in self.run.graph.downstream_nodes(node.id):
            downstream = self.run.graph.get_node(nid)
            if downstream.status in (NodeStatus.SUCCEEDED, NodeStatus.FAILED):
                self._set_status(downstream, NodeStatus.DIRTY)

    def _resolve_inputs(self, node: Node) -> dict[str, Any]:
        """
        Gather input values from upstream outputs.

        Single-connection ports get the upstream value; multi-connection
        ports get a list of values in connection order. Unconnected ports
        are left out so the worker falls back to params.
        """
        graph = self.run.graph
        inputs: dict[str, Any] = {}
        for port in node.inputs:
            edges = graph.incoming_edges(node.id, port.id)
            if not edges:
                continue
            values = []
            for edge in edges:
                source = graph.get_node(edge.source.node_id)
                values.append(_value_for_port(source, source.get_port(edge.source.port_id)))
            inputs[port.name] = values[-1] if port.max_connections == 1 else values
        return inputs

    async def _invoke(self, node: Node, inputs: dict[str, Any], context: WorkerContext) -> _Outcome:
        timeout = self._settings.node_timeout_seconds
        grace = self._settings.cancel_grace_seconds

        worker_task = asyncio.create_task(
            self._worker.invoke(node.kind, dict(node.params), inputs, context)
        )
        cancel_wait = asyncio.create_task(context.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {worker_task, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()

        if worker_task in done:
            return _outcome_of(worker_task)

        if not done:
            context.cancel()
            _abandon(worker_task, node.id)
            return _Outcome(NodeStatus.FAILED, error=f"Worker timed out after {timeout:g}s")

        # Cancellation requested: wait for the worker to acknowledge it
        done, _ = await asyncio.wait({worker_task}, timeout=grace)
        if not done:
            _abandon(worker_task, node.id)
            return _Outcome(
                NodeStatus.FAILED,
                error=f"Worker did not acknowledge cancellation within {grace:g}s",
            )
        return _outcome_of(worker_task)


def _value_for_port(node: Node, port: Port | None) -> Any:
    if (
        port is not None
        and len(node.outputs) > 1
        and isinstance(node.output, dict)
        and port.name in node.output
    ):
        return node.output[port.name]
    return node.output


def _outcome_of(task: asyncio.Task) -> _Outcome:
    if task.cancelled():
        return _Outcome(NodeStatus.CANCELED)
    exc = task.exception()
    if exc is not None:
        return _Outcome(NodeStatus.FAILED, error=str(exc) or type(exc).__name__)
    result = task.result()
    if not isinstance(result, WorkerResult):
        return _Outcome(
            NodeStatus.FAILED,
            error=f"Malformed worker output: expected WorkerResult, got {type(result).__name__}",
        )
    return _Outcome(NodeStatus.SUCCEEDED, result=result)


def _abandon(task: asyncio.Task, node_id: NodeId) -> None:
    """Let a worker finish on its own; its result is discarded."""

    def _discard(finished: asyncio.Task) -> None:
        if not finished.cancelled() and finished.exception() is not None:
            logger.debug("Abandoned worker for %s raised: %s", node_id, finished.exception())

    task.add_done_callback(_discard)


class RunHandle:
    """Handle for a run started with Scheduler.execute_streaming()."""

    def __init__(self, driver: _RunDriver, task: asyncio.Task):
        self._driver = driver
        self._task = task

    @property
    def run_id(self) -> str:
        return self._driver.run.id

    @property
    def run(self) -> ExecutionRun:
        return self._driver.run

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Request cooperative cancellation. Calling it again has no effect."""
        self._driver.cancel()

    async def wait(self) -> RunSummary:
        """Wait for the run to finish and return its summary."""
        return await self._task

    def status_of(self, node_id: NodeId) -> NodeStatus | None:
        node = self._driver.run.graph.get_node(node_id)
        return node.status if node else None

    def snapshot(self) -> Graph:
        """Copy of the run's graph with the current per-node state."""
        return self._driver.run.graph.snapshot()


class Scheduler:
    """
    Async execution engine for compute graphs.

    Features:
    - Concurrent execution of independent branches
    - Bounded in-flight worker calls
    - Progress and status streaming
    - Cooperative cancellation
    - Incremental re-runs
    """

    def __init__(self, worker: Worker, settings: EngineSettings | None = None):
        self._worker = worker
        self._settings = settings or EngineSettings()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def execute_streaming(
        self,
        graph: Graph,
        on_node_status: StatusCallback | None = None,
        on_node_progress: ProgressCallback | None = None,
        on_run_complete: CompletionCallback | None = None,
        targets: Iterable[NodeId] | None = None,
    ) -> RunHandle:
        """
        Start running a graph and return immediately.

        The run works on a snapshot taken now; later edits to `graph` only
        affect the next run. Must be called from a running event loop.

        Raises:
            GraphStructureError: The graph is structurally invalid (cycle,
                dangling edge, ...). Nothing has been started.
        """
        snapshot = graph.snapshot()
        ensure_valid_graph(snapshot)
        scope, to_run = plan_run(snapshot, list(targets) if targets else None)

        for nid in to_run:
            node = snapshot.get_node(nid)
            if node.status in (NodeStatus.QUEUED, NodeStatus.RUNNING):
                node.reset_runtime()

        run = ExecutionRun(id=str(uuid4()), graph=snapshot, scope=scope, to_run=to_run)
        driver = _RunDriver(
            run,
            self._worker,
            self._settings,
            on_node_status,
            on_node_progress,
            on_run_complete,
        )
        task = asyncio.get_running_loop().create_task(driver.drive())
        return RunHandle(driver, task)

    async def execute(
        self,
        graph: Graph,
        targets: Iterable[NodeId] | None = None,
    ) -> RunSummary:
        """Run a graph to completion and return the summary."""
        handle = self.execute_streaming(graph, targets=targets)
        return await handle.wait()
