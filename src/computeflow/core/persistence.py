"""
Graph Persistence - Save and load compute graphs.

This module provides:
- graph_to_dict / graph_from_dict: the versioned JSON document codec
- GraphStore: the async storage interface used by the service and CLI
- FileGraphStore: one JSON file per graph on local disk
- MemoryGraphStore: serialized documents kept in a dict

Runtime state (status, progress, preview, error, output) is never
persisted; a freshly loaded graph has every node idle. Documents that fail
parsing or break a graph invariant are rejected, never repaired.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from computeflow.core.data_types import DataType
from computeflow.core.errors import (
    CorruptGraphError,
    GraphNotFoundError,
    GraphStructureError,
    PersistenceError,
)
from computeflow.core.graph import (
    Edge,
    EdgeId,
    Graph,
    Node,
    NodeId,
    Point2D,
    Port,
    PortDirection,
    PortId,
    PortRef,
)
from computeflow.core.node_kinds import NodeKind
from computeflow.core.validation import ensure_valid_graph

logger = logging.getLogger(__name__)


DOCUMENT_VERSION = 1


# --- Codec ---


def _port_to_dict(port: Port) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": port.id,
        "name": port.name,
        "dataType": port.data_type.value,
    }
    if port.is_input:
        data["maxConnections"] = port.max_connections
    return data


def graph_to_dict(graph: Graph) -> dict[str, Any]:
    """Serialize a graph's definition to the persisted document format."""
    return {
        "version": DOCUMENT_VERSION,
        "nodes": [
            {
                "id": node.id,
                "kind": node.kind.value,
                "label": node.label,
                "position": {"x": node.position.x, "y": node.position.y},
                "params": copy.deepcopy(node.params),
                "inputs": [_port_to_dict(p) for p in node.inputs],
                "outputs": [_port_to_dict(p) for p in node.outputs],
            }
            for node in graph.nodes.values()
        ],
        "edges": [
            {
                "id": edge.id,
                "source": {"nodeId": edge.source.node_id, "portId": edge.source.port_id},
                "target": {"nodeId": edge.target.node_id, "portId": edge.target.port_id},
                "dataType": edge.data_type.value,
            }
            for edge in graph.edges.values()
        ],
    }


def _port_from_dict(data: dict[str, Any], direction: PortDirection) -> Port:
    if direction == PortDirection.INPUT:
        # Missing maxConnections means single-connection; explicit null is unbounded
        max_connections = data.get("maxConnections", 1)
        if max_connections is not None:
            max_connections = int(max_connections)
            if max_connections < 1:
                raise ValueError(f"maxConnections must be positive, got {max_connections}")
    else:
        max_connections = None
    return Port(
        id=PortId(str(data["id"])),
        name=str(data["name"]),
        data_type=DataType.parse(data["dataType"]),
        direction=direction,
        max_connections=max_connections,
    )


def _node_from_dict(data: dict[str, Any]) -> Node:
    position = data.get("position") or {}
    params = data.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError("params must be an object")
    return Node(
        id=NodeId(str(data["id"])),
        kind=NodeKind.parse(data["kind"]),
        label=str(data.get("label", "")),
        position=Point2D(float(position.get("x", 0.0)), float(position.get("y", 0.0))),
        params=dict(params),
        inputs=[_port_from_dict(p, PortDirection.INPUT) for p in data.get("inputs", [])],
        outputs=[_port_from_dict(p, PortDirection.OUTPUT) for p in data.get("outputs", [])],
    )


def _edge_from_dict(data: dict[str, Any]) -> Edge:
    source = data["source"]
    target = data["target"]
    return Edge(
        id=EdgeId(str(data["id"])),
        source=PortRef(NodeId(str(source["nodeId"])), PortId(str(source["portId"]))),
        target=PortRef(NodeId(str(target["nodeId"])), PortId(str(target["portId"]))),
        data_type=DataType.parse(data["dataType"]),
    )


def graph_from_dict(data: Any) -> Graph:
    """
    Build a graph from a persisted document.

    Raises:
        CorruptGraphError: The document is malformed or describes an invalid
            graph (dangling edge, cycle, capacity or type violation, ...).
    """
    if not isinstance(data, dict) or "nodes" not in data:
        raise CorruptGraphError("Invalid graph document: missing 'nodes'")

    version = data.get("version", DOCUMENT_VERSION)
    if version != DOCUMENT_VERSION:
        raise CorruptGraphError(f"Unsupported graph document version: {version}")

    graph = Graph()
    try:
        for node_data in data["nodes"]:
            graph.add_node(_node_from_dict(node_data))
        for edge_data in data.get("edges", []):
            graph.add_edge(_edge_from_dict(edge_data))
    except GraphStructureError as e:
        raise CorruptGraphError(f"Invalid graph document: {e}", e.issues) from e
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CorruptGraphError(f"Malformed graph document: {e!r}") from e

    try:
        ensure_valid_graph(graph)
    except GraphStructureError as e:
        raise CorruptGraphError(f"Invalid graph document: {e}", e.issues) from e

    return graph


def dumps(graph: Graph) -> str:
    """
    Encode a graph as a JSON document.

    Raises:
        PersistenceError: A parameter value has no JSON representation
    """
    try:
        return json.dumps(graph_to_dict(graph), indent=2)
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"Graph cannot be serialized: {e}") from e


def loads(text: str | bytes) -> Graph:
    try:
        data = json.loads(text)
    except ValueError as e:
        raise CorruptGraphError(f"Graph document is not valid JSON: {e}") from e
    return graph_from_dict(data)


# --- Stores ---


class GraphStore(ABC):
    """
    Abstract storage for graph documents, keyed by graph (project) id.

    save() is a whole-graph overwrite and never mutates the graph passed in.
    load() either returns a complete valid graph or raises.
    """

    @abstractmethod
    async def save(self, graph_id: str, graph: Graph) -> None:
        """
        Persist a graph.

        Raises:
            PersistenceError: Storage or transport failure
        """
        pass

    @abstractmethod
    async def load(self, graph_id: str) -> Graph:
        """
        Load a graph.

        Raises:
            GraphNotFoundError: Nothing stored under graph_id
            CorruptGraphError: The stored document is invalid
            PersistenceError: Storage or transport failure
        """
        pass

    @abstractmethod
    async def exists(self, graph_id: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, graph_id: str) -> None:
        """Remove a stored graph. Raises GraphNotFoundError if absent."""
        pass

    @abstractmethod
    async def list_ids(self) -> list[str]:
        pass


class MemoryGraphStore(GraphStore):
    """Keeps serialized documents in memory (tests, embedding)."""

    def __init__(self) -> None:
        self._documents: dict[str, str] = {}

    async def save(self, graph_id: str, graph: Graph) -> None:
        self._documents[graph_id] = dumps(graph)

    async def load(self, graph_id: str) -> Graph:
        if graph_id not in self._documents:
            raise GraphNotFoundError(graph_id)
        return loads(self._documents[graph_id])

    async def exists(self, graph_id: str) -> bool:
        return graph_id in self._documents

    async def delete(self, graph_id: str) -> None:
        if self._documents.pop(graph_id, None) is None:
            raise GraphNotFoundError(graph_id)

    async def list_ids(self) -> list[str]:
        return sorted(self._documents)

    def put_raw(self, graph_id: str, document: str) -> None:
        """Store a raw document as-is (lets tests plant corrupt data)."""
        self._documents[graph_id] = document


class FileGraphStore(GraphStore):
    """
    Stores each graph as `<graph_id>.json` in a directory.

    Writes go through a temporary file in the same directory followed by an
    atomic replace, so a crash never leaves a half-written document.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def path_for(self, graph_id: str) -> Path:
        if not graph_id or "/" in graph_id or "\\" in graph_id or graph_id.startswith("."):
            raise PersistenceError(f"Invalid graph id: {graph_id!r}")
        return self.directory / f"{graph_id}.json"

    async def save(self, graph_id: str, graph: Graph) -> None:
        path = self.path_for(graph_id)
        text = dumps(graph)
        try:
            await asyncio.to_thread(self._write_atomic, path, text)
        except OSError as e:
            raise PersistenceError(f"Failed to save graph {graph_id}: {e}") from e
        logger.info("Saved graph %s to %s", graph_id, path)

    def _write_atomic(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def load(self, graph_id: str) -> Graph:
        path = self.path_for(graph_id)
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            raise GraphNotFoundError(graph_id) from None
        except UnicodeDecodeError as e:
            raise CorruptGraphError(f"Graph {graph_id} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to read graph {graph_id}: {e}") from e

        graph = loads(text)
        logger.info("Loaded graph %s (%d nodes, %d edges)", graph_id, len(graph), len(graph.edges))
        return graph

    async def exists(self, graph_id: str) -> bool:
        return self.path_for(graph_id).exists()

    async def delete(self, graph_id: str) -> None:
        path = self.path_for(graph_id)
        try:
            path.unlink()
        except FileNotFoundError:
            raise GraphNotFoundError(graph_id) from None
        except OSError as e:
            raise PersistenceError(f"Failed to delete graph {graph_id}: {e}") from e

    async def list_ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


def load_graph_file(path: Path | str) -> Graph:
    """Read a graph document from an arbitrary path (used by the CLI)."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise GraphNotFoundError(str(path)) from None
    except UnicodeDecodeError as e:
        raise CorruptGraphError(f"{path} is not valid UTF-8: {e}") from e
    except OSError as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e
    return loads(text)
