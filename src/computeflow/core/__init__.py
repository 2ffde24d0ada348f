"""
Core module - Graph model, validation, execution and persistence.

This module provides the fundamental building blocks of computeflow:
- Graph: Nodes, ports and edges
- Data Types / Node Kinds: The closed type and kind sets
- Validation: Connection rules and whole-graph checks
- Execution: The async DAG scheduler
- Persistence: Document codec and graph stores
- Service: Single-writer owner of a graph and its runs
"""

from computeflow.core.data_types import (
    DataType,
    compatible,
)

from computeflow.core.errors import (
    AuthenticationError,
    ComputeFlowError,
    ConnectionRejectedError,
    CorruptGraphError,
    CycleError,
    DanglingEdgeError,
    GraphNotFoundError,
    GraphStructureError,
    InvalidStatusTransition,
    PersistenceError,
    RateLimitError,
    RunInProgressError,
    WorkerError,
    WorkerTimeoutError,
)

from computeflow.core.node_kinds import (
    InputDefinition,
    KindSpec,
    NodeKind,
    OutputDefinition,
    all_kind_specs,
    kind_spec,
)

from computeflow.core.status import (
    NodeStatus,
    can_transition,
    guard_transition,
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
    new_edge_id,
    new_node_id,
)

from computeflow.core.validation import (
    ConnectionResult,
    GraphIssue,
    connect,
    ensure_valid_graph,
    validate_connection,
    validate_graph,
)

from computeflow.core.settings import (
    EngineSettings,
    load_settings,
    save_settings,
)

from computeflow.core.execution import (
    NodeProgressEvent,
    NodeStatusEvent,
    RunHandle,
    RunStatus,
    RunSummary,
    Scheduler,
    Worker,
    WorkerContext,
    WorkerResult,
)

from computeflow.core.persistence import (
    FileGraphStore,
    GraphStore,
    MemoryGraphStore,
    graph_from_dict,
    graph_to_dict,
)

from computeflow.core.history import GraphHistory

from computeflow.core.service import (
    GraphEvent,
    GraphEventType,
    GraphService,
)


__all__ = [
    # data_types.py
    "DataType",
    "compatible",
    # errors.py
    "AuthenticationError",
    "ComputeFlowError",
    "ConnectionRejectedError",
    "CorruptGraphError",
    "CycleError",
    "DanglingEdgeError",
    "GraphNotFoundError",
    "GraphStructureError",
    "InvalidStatusTransition",
    "PersistenceError",
    "RateLimitError",
    "RunInProgressError",
    "WorkerError",
    "WorkerTimeoutError",
    # node_kinds.py
    "InputDefinition",
    "KindSpec",
    "NodeKind",
    "OutputDefinition",
    "all_kind_specs",
    "kind_spec",
    # status.py
    "NodeStatus",
    "can_transition",
    "guard_transition",
    # graph.py
    "Edge",
    "EdgeId",
    "Graph",
    "Node",
    "NodeId",
    "Point2D",
    "Port",
    "PortDirection",
    "PortId",
    "PortRef",
    "new_edge_id",
    "new_node_id",
    # validation.py
    "ConnectionResult",
    "GraphIssue",
    "connect",
    "ensure_valid_graph",
    "validate_connection",
    "validate_graph",
    # settings.py
    "EngineSettings",
    "load_settings",
    "save_settings",
    # execution.py
    "NodeProgressEvent",
    "NodeStatusEvent",
    "RunHandle",
    "RunStatus",
    "RunSummary",
    "Scheduler",
    "Worker",
    "WorkerContext",
    "WorkerResult",
    # persistence.py
    "FileGraphStore",
    "GraphStore",
    "MemoryGraphStore",
    "graph_from_dict",
    "graph_to_dict",
    # history.py
    "GraphHistory",
    # service.py
    "GraphEvent",
    "GraphEventType",
    "GraphService",
]
