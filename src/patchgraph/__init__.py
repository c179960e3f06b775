"""Node graphs compiled to Python and evaluated by push and pull."""

__all__ = [
    "CompiledUnit",
    "CoordinatorState",
    "CycleCancelled",
    "CycleInProgress",
    "CycleResult",
    "CycleViolation",
    "DependencyGraph",
    "DocumentError",
    "Edge",
    "EvaluationCoordinator",
    "Graph",
    "GraphDocument",
    "GraphEvent",
    "GraphEventKind",
    "Initializer",
    "InvalidStateTransition",
    "Node",
    "NodeKind",
    "NodePath",
    "NodeRegistry",
    "PatchGraphError",
    "Port",
    "PortAlreadyConnected",
    "PortSignature",
    "PortSignatureDrift",
    "Request",
    "Runtime",
    "RuntimeEvaluationError",
    "SignatureMismatch",
    "StateStore",
    "UnknownNodeKind",
    "UnsupportedBody",
    "compile_graph",
    "default_registry",
    "document_to_graph",
    "eval_order",
    "graph_to_document",
    "load_graph",
    "load_state",
    "save_graph",
    "save_state",
]

from ._compile import CompiledUnit, compile_graph, eval_order
from ._errors import (
    CycleCancelled,
    CycleInProgress,
    CycleViolation,
    DocumentError,
    InvalidStateTransition,
    PatchGraphError,
    PortAlreadyConnected,
    PortSignatureDrift,
    RuntimeEvaluationError,
    SignatureMismatch,
    UnknownNodeKind,
    UnsupportedBody,
)
from ._eval_engine import CoordinatorState, CycleResult, EvaluationCoordinator, Request
from ._graph import DependencyGraph, Edge, Graph, GraphEvent, GraphEventKind
from ._io import GraphDocument, document_to_graph, graph_to_document, load_graph, load_state, save_graph, save_state
from ._node import Initializer, Node, NodeKind, NodePath, Port, PortSignature
from ._registry import NodeRegistry, default_registry
from ._runtime import Runtime
from ._state import StateStore
