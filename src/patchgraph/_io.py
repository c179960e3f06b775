"""Persisted graph and state documents (TOML or JSON)."""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any, TypeVar

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ._context import reset_registry, set_registry
from ._errors import DocumentError, PortSignatureDrift, SignatureMismatch, format_path
from ._graph import Graph
from ._node import GraphBody, Initializer, Node, NodePath, PortSignature
from ._registry import NodeRegistry, default_registry
from ._state import StateStore

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


# =============================================================================
# Document Models
# =============================================================================


class InitializerRecord(BaseModel):
    """State initializer: a JSON literal or an importable factory reference."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    literal: str | None = None
    ref: str | None = None


class NodeRecord(BaseModel):
    """A node: its registry tag, the parameters rebuilding it and its port signature."""

    model_config = ConfigDict(extra="forbid")

    id: int
    tag: str
    label: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    inputs: list[str] | None = None
    outputs: list[str] | None = None
    initializer: InitializerRecord | None = None


class EdgeRecord(BaseModel):
    """An edge with ports referenced by name."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: int
    output: str
    target: int
    input: str


class ExposedPortRecord(BaseModel):
    """An exposed graph port bound to a named port of an inner node."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    node: int
    port: str


class GraphDocument(BaseModel):
    """A persisted graph with an optional state snapshot.

    State values are JSON text keyed by node path (``"3"`` or ``"3/1"``).
    """

    model_config = ConfigDict(extra="forbid")

    format_version: int = FORMAT_VERSION
    graph_id: str
    nodes: list[NodeRecord] = Field(default_factory=list)
    edges: list[EdgeRecord] = Field(default_factory=list)
    exposed_inputs: list[ExposedPortRecord] = Field(default_factory=list)
    exposed_outputs: list[ExposedPortRecord] = Field(default_factory=list)
    state: dict[str, str] = Field(default_factory=dict)


class StateDocument(BaseModel):
    """A state snapshot stored apart from its graph."""

    model_config = ConfigDict(extra="forbid")

    format_version: int = FORMAT_VERSION
    graph_id: str
    state: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Conversion
# =============================================================================


def parse_path(text: str) -> NodePath:
    """Parse ``"3/1"`` into ``(3, 1)``."""
    try:
        return tuple(int(part) for part in text.split("/"))
    except ValueError as e:
        msg = f"Invalid node path '{text}'"
        raise DocumentError(msg) from e


def _check_keys(value: Any, what: str) -> None:
    """Reject mappings with non-string keys; JSON would turn the keys into strings."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                msg = f"{what} is not JSON serializable: key {key!r} is not a string"
                raise DocumentError(msg)
            _check_keys(item, what)
    elif isinstance(value, list | tuple):
        for item in value:
            _check_keys(item, what)


def _dump_json(value: Any, what: str) -> str:
    _check_keys(value, what)
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        msg = f"{what} is not JSON serializable: {e}"
        raise DocumentError(msg) from e


def _load_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        msg = f"{what} is not valid JSON: {e}"
        raise DocumentError(msg) from e


def state_to_records(store: StateStore) -> dict[str, str]:
    """Serialize every slot to JSON text keyed by path string."""
    return {format_path(path): _dump_json(store.get(path), f"State of node {format_path(path)}") for path in store}


def records_to_state(graph_id: str, records: dict[str, str]) -> StateStore:
    """Rebuild a state store from serialized slots."""
    return StateStore(
        graph_id,
        {parse_path(key): _load_json(value, f"State of node {key}") for key, value in records.items()},
    )


def _initializer_record(node: Node) -> InitializerRecord | None:
    if node.initializer is None:
        return None
    if node.initializer.ref is not None:
        return InitializerRecord(ref=node.initializer.ref)
    return InitializerRecord(literal=_dump_json(node.initializer.value, f"Initial state of {node.tag} node"))


def graph_to_document(graph: Graph, store: StateStore | None = None) -> GraphDocument:
    """Describe a graph, and optionally its state, as a document."""
    records: list[NodeRecord] = []
    for node_id, node in graph.nodes.items():
        if node.tag == "graph" and isinstance(node.body, GraphBody):
            nested = graph_to_document(node.body.graph)
            params: dict[str, Any] = {"document": nested.model_dump(mode="json", exclude_none=True)}
        else:
            params = {key: value for key, value in node.params.items() if value is not None}
        records.append(
            NodeRecord(
                id=node_id,
                tag=node.tag,
                label=graph.label_of(node_id),
                params=params,
                inputs=list(node.signature.inputs),
                outputs=list(node.signature.outputs),
                initializer=_initializer_record(node),
            ),
        )

    def _port(node_id: int, index: int, *, output: bool) -> str:
        node = graph.node(node_id)
        return (node.outputs if output else node.inputs)[index].name

    return GraphDocument(
        graph_id=graph.graph_id,
        nodes=records,
        edges=[
            EdgeRecord(
                source=edge.source,
                output=_port(edge.source, edge.output, output=True),
                target=edge.target,
                input=_port(edge.target, edge.input, output=False),
            )
            for edge in graph.edges
        ],
        exposed_inputs=[
            ExposedPortRecord(name=name, node=node_id, port=_port(node_id, index, output=False))
            for name, (node_id, index) in graph.exposed_inputs.items()
        ],
        exposed_outputs=[
            ExposedPortRecord(name=name, node=node_id, port=_port(node_id, index, output=True))
            for name, (node_id, index) in graph.exposed_outputs.items()
        ],
        state=state_to_records(store) if store is not None else {},
    )


def _rebuild_node(record: NodeRecord, registry: NodeRegistry) -> Node:
    node = registry.create(record.tag, record.params)
    if record.initializer is not None:
        init = record.initializer
        initializer = (
            Initializer(ref=init.ref)
            if init.ref is not None
            else Initializer(value=_load_json(init.literal or "null", f"Initial state of node {record.id}"))
        )
        try:
            node = node.with_initializer(initializer)
        except SignatureMismatch as e:
            msg = f"Node {record.id} ('{record.tag}') has an initializer but is not stateful"
            raise DocumentError(msg) from e

    if record.inputs is not None or record.outputs is not None:
        persisted = PortSignature(
            inputs=tuple(record.inputs) if record.inputs is not None else node.signature.inputs,
            outputs=tuple(record.outputs) if record.outputs is not None else node.signature.outputs,
        )
        if persisted != node.signature:
            raise PortSignatureDrift(record.id, record.tag, persisted, node.signature)
    return node


def document_to_graph(document: GraphDocument, registry: NodeRegistry | None = None) -> tuple[Graph, StateStore]:
    """Rebuild a graph and its state store from a document.

    Raises:
        UnknownNodeKind: If a node tag is not registered.
        PortSignatureDrift: If a rebuilt node's ports differ from the persisted ones.
        DocumentError: If the document is otherwise inconsistent.

    """
    if document.format_version != FORMAT_VERSION:
        msg = f"Unsupported document format version {document.format_version} (expected {FORMAT_VERSION})"
        raise DocumentError(msg)
    if registry is None:
        registry = default_registry()

    token = set_registry(registry)
    try:
        graph = Graph(graph_id=document.graph_id)
        for record in document.nodes:
            graph.add_node(_rebuild_node(record, registry), node_id=record.id, label=record.label)
        try:
            for edge in document.edges:
                graph.add_edge(
                    edge.source,
                    graph.node(edge.source).output_index(edge.output),
                    edge.target,
                    graph.node(edge.target).input_index(edge.input),
                )
            for port in document.exposed_inputs:
                graph.expose_input(port.name, port.node, graph.node(port.node).input_index(port.port))
            for port in document.exposed_outputs:
                graph.expose_output(port.name, port.node, graph.node(port.node).output_index(port.port))
        except (KeyError, ValueError) as e:
            msg = f"Inconsistent graph document {document.graph_id}: {e}"
            raise DocumentError(msg) from e
    finally:
        reset_registry(token)

    store = records_to_state(graph.graph_id, document.state)
    logger.debug("Loaded graph %s with %d nodes and %d state slots", graph.graph_id, len(graph), len(store))
    return graph, store


# =============================================================================
# Files
# =============================================================================


def _write(path: Path, model: BaseModel) -> None:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        with path.open("wb") as f:
            tomli_w.dump(model.model_dump(mode="json", exclude_none=True), f)
    elif suffix == ".json":
        path.write_text(model.model_dump_json(indent=2, exclude_none=True) + "\n", encoding="utf-8")
    else:
        msg = f"Unsupported file type '{path.suffix}' for {path}; use .toml or .json"
        raise DocumentError(msg)


M = TypeVar("M", bound=BaseModel)


def _read(path: Path, model: type[M]) -> M:
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            with path.open("rb") as f:
                return model.model_validate(tomllib.load(f))
        if suffix == ".json":
            return model.model_validate_json(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        msg = f"Invalid TOML in {path}: {e}"
        raise DocumentError(msg) from e
    except ValidationError as e:
        msg = f"Invalid document {path}: {e}"
        raise DocumentError(msg) from e
    except OSError as e:
        msg = f"Cannot read {path}: {e}"
        raise DocumentError(msg) from e
    msg = f"Unsupported file type '{path.suffix}' for {path}; use .toml or .json"
    raise DocumentError(msg)


def save_graph(path: str | Path, graph: Graph, store: StateStore | None = None) -> None:
    """Write a graph, and optionally its state, to a .toml or .json file."""
    path = Path(path)
    _write(path, graph_to_document(graph, store))
    logger.info("Saved graph %s to %s", graph.graph_id, path)


def load_graph(path: str | Path, registry: NodeRegistry | None = None) -> tuple[Graph, StateStore]:
    """Read a graph and its state from a .toml or .json file."""
    return document_to_graph(_read(Path(path), GraphDocument), registry)


def save_state(path: str | Path, store: StateStore) -> None:
    """Write a state snapshot to a .toml or .json file."""
    _write(Path(path), StateDocument(graph_id=store.graph_id, state=state_to_records(store)))


def load_state(path: str | Path) -> StateStore:
    """Read a state snapshot from a .toml or .json file."""
    document = _read(Path(path), StateDocument)
    if document.format_version != FORMAT_VERSION:
        msg = f"Unsupported state format version {document.format_version} (expected {FORMAT_VERSION})"
        raise DocumentError(msg)
    return records_to_state(document.graph_id, document.state)
