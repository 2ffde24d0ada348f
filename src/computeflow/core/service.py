"""
Graph Service - Single-writer owner of a graph and its runs.

Every mutation is a command put on an asyncio queue and applied by one
worker task, so edits, undo/redo and status updates coming back from the
scheduler never interleave. Readers get snapshots, and subscribers are
told about every change through GraphEvent callbacks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from computeflow.core.errors import ComputeFlowError, GraphStructureError, RunInProgressError
from computeflow.core.execution import (
    NodeProgressEvent,
    NodeStatusEvent,
    RunHandle,
    RunSummary,
    Scheduler,
)
from computeflow.core.graph import Edge, EdgeId, Graph, Node, NodeId, Point2D, PortId
from computeflow.core.history import GraphHistory
from computeflow.core.node_kinds import NodeKind
from computeflow.core.persistence import GraphStore
from computeflow.core.status import NodeStatus
from computeflow.core.validation import connect

logger = logging.getLogger(__name__)


class GraphEventType(Enum):
    NODE_ADDED = "node_added"
    NODE_REMOVED = "node_removed"
    NODE_UPDATED = "node_updated"
    NODE_STATUS = "node_status"
    NODE_PROGRESS = "node_progress"
    EDGE_ADDED = "edge_added"
    EDGE_REMOVED = "edge_removed"
    GRAPH_REPLACED = "graph_replaced"
    GRAPH_SAVED = "graph_saved"
    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"


@dataclass
class GraphEvent:
    """Something changed in the service's graph."""
    type: GraphEventType
    node_id: NodeId | None = None
    edge_id: EdgeId | None = None
    data: dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[GraphEvent], None]

_Command = tuple[Callable[[], Any], "asyncio.Future | None"]


class GraphService:
    """
    Owns one Graph and at most one active run.

    Use as an async context manager (or call start()/stop()) so the command
    worker is running:

        async with GraphService(scheduler, store, "project-1") as service:
            prompt = await service.add_node(NodeKind.PROMPT)
            ...
            handle = await service.run()
            summary = await handle.wait()
    """

    def __init__(
        self,
        scheduler: Scheduler,
        store: GraphStore | None = None,
        graph_id: str = "default",
        graph: Graph | None = None,
        history_limit: int | None = None,
    ):
        self._scheduler = scheduler
        self._store = store
        self.graph_id = graph_id
        self._graph = graph if graph is not None else Graph()
        self._history = GraphHistory(history_limit or scheduler.settings.history_limit)
        self._history.push(self._graph, "initial")

        self._queue: asyncio.Queue[_Command | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._subscribers: list[EventCallback] = []
        self._active_run: RunHandle | None = None
        self._edited_during_run: set[NodeId] = set()
        self._last_summary: RunSummary | None = None

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_commands())

    async def stop(self) -> None:
        """Cancel any active run and stop the command worker."""
        if self._active_run is not None and not self._active_run.done:
            self._active_run.cancel()
            await self._active_run.wait()
        if self._worker is not None and not self._worker.done():
            await self._queue.put(None)
            await self._worker
        self._worker = None

    async def __aenter__(self) -> GraphService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def _process_commands(self) -> None:
        while True:
            command = await self._queue.get()
            if command is None:
                break
            action, future = command
            try:
                result = action()
            except Exception as e:
                if future is None:
                    logger.exception("Graph command failed")
                elif not future.cancelled():
                    future.set_exception(e)
            else:
                if future is not None and not future.cancelled():
                    future.set_result(result)

    async def _submit(self, action: Callable[[], Any]) -> Any:
        if not self.running:
            raise RuntimeError("GraphService is not started")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((action, future))
        return await future

    def _post(self, action: Callable[[], Any]) -> None:
        """Enqueue a command without waiting for it (scheduler callbacks)."""
        self._queue.put_nowait((action, None))

    # --- Events ---

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an event callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event: GraphEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.type.value)

    # --- Reads ---

    def snapshot(self) -> Graph:
        """Independent copy of the current graph."""
        return self._graph.snapshot()

    def get_node(self, node_id: NodeId) -> Node | None:
        node = self._graph.get_node(node_id)
        return node.copy() if node else None

    @property
    def active_run(self) -> RunHandle | None:
        return self._active_run

    @property
    def last_summary(self) -> RunSummary | None:
        return self._last_summary

    @property
    def history(self) -> GraphHistory:
        return self._history

    # --- Edit commands ---

    def _require_node(self, node_id: NodeId) -> Node:
        node = self._graph.get_node(node_id)
        if node is None:
            raise GraphStructureError(f"Node not found: {node_id}")
        return node

    def _run_active(self) -> bool:
        return self._active_run is not None and not self._active_run.done

    def _invalidate(self, node_id: NodeId, include_self: bool = True) -> None:
        if self._run_active():
            self._edited_during_run.add(node_id)
            self._edited_during_run |= self._graph.downstream_nodes(node_id)
        for nid in sorted(self._graph.invalidate_from(node_id, include_self)):
            self._publish(GraphEvent(GraphEventType.NODE_STATUS, node_id=nid,
                                     data={"status": NodeStatus.DIRTY}))

    def _record(self, description: str) -> None:
        self._history.push(self._graph, description)

    async def add_node(
        self,
        kind: NodeKind,
        position: Point2D | None = None,
        label: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Node:
        def action() -> Node:
            node = Node.create(kind, position=position, label=label, params=params)
            self._graph.add_node(node)
            self._record(f"Add {kind.value} node")
            self._publish(GraphEvent(GraphEventType.NODE_ADDED, node_id=node.id))
            return node.copy()

        return await self._submit(action)

    async def remove_node(self, node_id: NodeId) -> list[Edge]:
        """Remove a node; returns the edges removed with it."""
        def action() -> list[Edge]:
            self._require_node(node_id)
            targets = {e.target.node_id for e in self._graph.outgoing_edges(node_id)}
            removed = self._graph.edges_of(node_id)
            self._graph.remove_node(node_id)
            for edge in removed:
                self._publish(GraphEvent(GraphEventType.EDGE_REMOVED, edge_id=edge.id))
            self._publish(GraphEvent(GraphEventType.NODE_REMOVED, node_id=node_id))
            for target in targets:
                self._invalidate(target)
            self._record("Remove node")
            return removed

        return await self._submit(action)

    async def move_node(self, node_id: NodeId, position: Point2D) -> None:
        def action() -> None:
            self._require_node(node_id).position = Point2D(position.x, position.y)
            self._publish(GraphEvent(GraphEventType.NODE_UPDATED, node_id=node_id,
                                     data={"position": position}))

        await self._submit(action)

    async def rename_node(self, node_id: NodeId, label: str) -> None:
        def action() -> None:
            self._require_node(node_id).label = label
            self._record("Rename node")
            self._publish(GraphEvent(GraphEventType.NODE_UPDATED, node_id=node_id,
                                     data={"label": label}))

        await self._submit(action)

    async def update_params(self, node_id: NodeId, params: dict[str, Any]) -> None:
        """Merge parameter values into a node and mark it (and downstream) dirty."""
        def action() -> None:
            node = self._require_node(node_id)
            node.params.update(params)
            self._invalidate(node_id)
            self._record("Update parameters")
            self._publish(GraphEvent(GraphEventType.NODE_UPDATED, node_id=node_id,
                                     data={"params": dict(node.params)}))

        await self._submit(action)

    async def change_kind(self, node_id: NodeId, kind: NodeKind) -> list[Edge]:
        """Recreate a node with a new kind; returns the edges that were removed."""
        def action() -> list[Edge]:
            self._require_node(node_id)
            downstream = {e.target.node_id for e in self._graph.outgoing_edges(node_id)}
            _, removed = self._graph.change_node_kind(node_id, kind)
            if self._run_active():
                self._edited_during_run.add(node_id)
            for edge in removed:
                self._publish(GraphEvent(GraphEventType.EDGE_REMOVED, edge_id=edge.id))
            for target in downstream:
                self._invalidate(target)
            self._record(f"Change kind to {kind.value}")
            self._publish(GraphEvent(GraphEventType.NODE_UPDATED, node_id=node_id,
                                     data={"kind": kind}))
            return removed

        return await self._submit(action)

    async def connect(
        self,
        source_node_id: NodeId,
        source_port_id: PortId,
        target_node_id: NodeId,
        target_port_id: PortId,
    ) -> Edge:
        """
        Add an edge after validation.

        Raises:
            ConnectionRejectedError: With the validator's reason.
        """
        def action() -> Edge:
            edge = connect(
                self._graph, source_node_id, source_port_id, target_node_id, target_port_id
            )
            self._invalidate(target_node_id)
            self._record("Connect")
            self._publish(GraphEvent(GraphEventType.EDGE_ADDED, edge_id=edge.id))
            return edge

        return await self._submit(action)

    async def disconnect(self, edge_id: EdgeId) -> Edge:
        def action() -> Edge:
            edge = self._graph.remove_edge(edge_id)
            if edge is None:
                raise GraphStructureError(f"Edge not found: {edge_id}")
            self._invalidate(edge.target.node_id)
            self._record("Disconnect")
            self._publish(GraphEvent(GraphEventType.EDGE_REMOVED, edge_id=edge_id))
            return edge

        return await self._submit(action)

    # --- History ---

    def _restore(self, graph: Graph) -> None:
        """
        Swap in a restored definition.

        Nodes whose definition and inputs did not change keep their runtime
        state; everything else starts idle and dirties what depends on it.
        """
        previous = self._graph
        changed: list[NodeId] = []
        for nid, node in graph.nodes.items():
            old = previous.get_node(nid)
            if old is not None and _same_definition(previous, old, graph, node):
                node.status = old.status
                node.progress = old.progress
                node.preview = old.preview
                node.error = old.error
                node.output = old.output
            else:
                changed.append(nid)

        self._graph = graph
        for nid in changed:
            self._invalidate(nid, include_self=False)
            if self._run_active():
                self._edited_during_run.add(nid)
        self._publish(GraphEvent(GraphEventType.GRAPH_REPLACED))

    async def undo(self) -> bool:
        def action() -> bool:
            snapshot = self._history.undo()
            if snapshot is None:
                return False
            self._restore(snapshot.restore())
            return True

        return await self._submit(action)

    async def redo(self) -> bool:
        def action() -> bool:
            snapshot = self._history.redo()
            if snapshot is None:
                return False
            self._restore(snapshot.restore())
            return True

        return await self._submit(action)

    # --- Persistence ---

    def _require_store(self) -> GraphStore:
        if self._store is None:
            raise ComputeFlowError("No graph store configured")
        return self._store

    async def save(self, graph_id: str | None = None) -> None:
        """Persist the current definition. The live graph is not touched."""
        store = self._require_store()
        graph_id = graph_id or self.graph_id
        snapshot = await self._submit(self._graph.snapshot)
        await store.save(graph_id, snapshot)
        self._publish(GraphEvent(GraphEventType.GRAPH_SAVED, data={"graph_id": graph_id}))

    async def load(self, graph_id: str | None = None) -> None:
        """
        Replace the graph with a stored one (all nodes idle).

        Raises:
            RunInProgressError: A run is active.
            PersistenceError: The graph could not be loaded; nothing changes.
        """
        store = self._require_store()
        graph_id = graph_id or self.graph_id
        if self._run_active():
            raise RunInProgressError("Cannot load a graph while a run is active")
        graph = await store.load(graph_id)

        def action() -> None:
            if self._run_active():
                raise RunInProgressError("Cannot load a graph while a run is active")
            self._graph = graph
            self.graph_id = graph_id
            self._history.clear()
            self._history.push(graph, "load")
            self._publish(GraphEvent(GraphEventType.GRAPH_REPLACED, data={"graph_id": graph_id}))

        await self._submit(action)

    # --- Runs ---

    async def run(self, targets: Iterable[NodeId] | None = None) -> RunHandle:
        """
        Start a run over a snapshot of the graph.

        Raises:
            RunInProgressError: Another run is still active.
            GraphStructureError: The graph cannot be executed.
        """
        target_list = list(targets) if targets else None

        def action() -> RunHandle:
            if self._run_active():
                raise RunInProgressError(f"Run {self._active_run.run_id} is still active")
            self._edited_during_run.clear()
            handle = self._scheduler.execute_streaming(
                self._graph,
                on_node_status=lambda event: self._post(lambda: self._apply_status(event)),
                on_node_progress=lambda event: self._post(lambda: self._apply_progress(event)),
                on_run_complete=lambda summary: self._post(lambda: self._finish_run(summary)),
                targets=target_list,
            )
            self._active_run = handle
            self._publish(GraphEvent(GraphEventType.RUN_STARTED, data={"run_id": handle.run_id}))
            return handle

        return await self._submit(action)

    async def cancel_run(self) -> None:
        if self._active_run is not None:
            self._active_run.cancel()

    async def wait_for_run(self) -> RunSummary | None:
        """Wait for the active run and for its updates to reach the graph."""
        handle = self._active_run
        if handle is None:
            return self._last_summary
        summary = await handle.wait()
        await self._submit(lambda: None)
        return summary

    def _apply_status(self, event: NodeStatusEvent) -> None:
        node = self._graph.get_node(event.node_id)
        if node is None:
            return

        status = event.status
        if status == NodeStatus.SUCCEEDED and event.node_id in self._edited_during_run:
            # Edited mid-run: the result is for the old definition
            status = NodeStatus.DIRTY
            node.output = None
        elif status == NodeStatus.SUCCEEDED:
            node.output = event.output
        elif status == NodeStatus.FAILED:
            node.output = None

        node.status = status
        node.progress = event.progress
        node.preview = event.preview
        node.error = event.error
        for edge in self._graph.incoming_edges(node.id):
            edge.status = status

        self._publish(GraphEvent(
            GraphEventType.NODE_STATUS,
            node_id=node.id,
            data={"status": status, "error": event.error, "preview": event.preview},
        ))

    def _apply_progress(self, event: NodeProgressEvent) -> None:
        node = self._graph.get_node(event.node_id)
        if node is None:
            return
        node.progress = event.progress
        self._publish(GraphEvent(GraphEventType.NODE_PROGRESS, node_id=node.id,
                                 data={"progress": event.progress}))

    def _finish_run(self, summary: RunSummary) -> None:
        self._last_summary = summary
        self._edited_during_run.clear()
        self._publish(GraphEvent(GraphEventType.RUN_FINISHED, data={"summary": summary}))


def _same_definition(old_graph: Graph, old: Node, new_graph: Graph, new: Node) -> bool:
    if (old.kind, old.params, old.inputs, old.outputs) != (new.kind, new.params, new.inputs, new.outputs):
        return False
    old_in = {(e.source, e.target) for e in old_graph.incoming_edges(old.id)}
    new_in = {(e.source, e.target) for e in new_graph.incoming_edges(new.id)}
    return old_in == new_in
