"""The editable graph: an arena of nodes connected by port-level edges."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Generic, TypeAlias, TypeVar

from .._errors import CycleViolation, PortAlreadyConnected
from ._dependency_graph import DependencyGraph

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from .._node import Node

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True, order=True)
class Edge(Generic[T]):
    """A connection from output ``output`` of ``source`` to input ``input`` of ``target``."""

    source: T
    output: int
    target: T
    input: int


class GraphEventKind(StrEnum):
    """Kinds of structural change reported to graph listeners."""

    NODE_ADDED = auto()
    NODE_REMOVED = auto()
    NODE_REPLACED = auto()
    EDGE_ADDED = auto()
    EDGE_REMOVED = auto()
    PORTS_CHANGED = auto()  # An exposed input or output was added or removed


@dataclass(frozen=True, slots=True)
class GraphEvent:
    """A structural change of a graph."""

    kind: GraphEventKind
    graph_id: str
    node_id: int | None = None
    edge: Edge[int] | None = None


GraphListener: TypeAlias = "Callable[[GraphEvent], None]"


@dataclass(slots=True, eq=False)
class Graph:
    """A directed graph of nodes wired port to port.

    Node ids are assigned by the graph and never reused while the graph lives.
    Every input port accepts at most one edge; an output may feed any number of
    inputs. Edits that would violate this, or close a cycle that does not pass
    through a delay node, raise without changing the graph.

    Example:
        >>> graph = Graph()
        >>> a = graph.add_node(Node.expr("1"))
        >>> b = graph.add_node(Node.expr("$x + 1"))
        >>> graph.add_edge(a, 0, b, 0)
        Edge(source=0, output=0, target=1, input=0)

    """

    graph_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    _nodes: dict[int, Node] = field(default_factory=dict)
    _labels: dict[str, int] = field(default_factory=dict)
    _edges: dict[tuple[int, int], Edge[int]] = field(default_factory=dict)
    _exposed_inputs: dict[str, tuple[int, int]] = field(default_factory=dict)
    _exposed_outputs: dict[str, tuple[int, int]] = field(default_factory=dict)
    _listeners: list[GraphListener] = field(default_factory=list)
    _next_id: int = 0

    # -- Nodes -------------------------------------------------------------------

    @property
    def nodes(self) -> dict[int, Node]:
        """Nodes by id, in ascending id order."""
        return {node_id: self._nodes[node_id] for node_id in sorted(self._nodes)}

    def node(self, node_id: int) -> Node:
        """Return the node with the given id."""
        try:
            return self._nodes[node_id]
        except KeyError:
            msg = f"No node with id {node_id} in graph {self.graph_id}"
            raise KeyError(msg) from None

    def add_node(self, node: Node, *, node_id: int | None = None, label: str | None = None) -> int:
        """Add a node and return its id.

        ``node_id`` is only meant for restoring persisted graphs; it must be unused.
        """
        if node_id is None:
            node_id = self._next_id
        elif node_id in self._nodes:
            msg = f"Node id {node_id} is already in use"
            raise ValueError(msg)
        if label is not None and label in self._labels:
            msg = f"Label '{label}' is already in use"
            raise ValueError(msg)

        self._nodes[node_id] = node
        self._next_id = max(self._next_id, node_id + 1)
        if label is not None:
            self._labels[label] = node_id
        logger.debug("Added node %d (%s) to graph %s", node_id, node.tag, self.graph_id)
        self._emit(GraphEvent(GraphEventKind.NODE_ADDED, self.graph_id, node_id=node_id))
        return node_id

    def remove_node(self, node_id: int) -> Node:
        """Remove a node together with its edges and exposed ports."""
        node = self.node(node_id)
        for edge in [*self.incoming(node_id), *self.outgoing(node_id)]:
            self.remove_edge(edge)
        ports_changed = self._drop_exposed(node_id, keep_inputs=0, keep_outputs=0)
        del self._nodes[node_id]
        self._labels = {label: nid for label, nid in self._labels.items() if nid != node_id}
        logger.debug("Removed node %d from graph %s", node_id, self.graph_id)
        self._emit(GraphEvent(GraphEventKind.NODE_REMOVED, self.graph_id, node_id=node_id))
        if ports_changed:
            self._emit(GraphEvent(GraphEventKind.PORTS_CHANGED, self.graph_id, node_id=node_id))
        return node

    def replace_node(self, node_id: int, node: Node) -> list[Edge[int]]:
        """Swap the node instance at ``node_id`` keeping the id.

        Edges and exposed ports whose port index no longer exists are dropped
        and the dropped edges returned.
        """
        old = self.node(node_id)
        dropped = [
            edge
            for edge in [*self.incoming(node_id), *self.outgoing(node_id)]
            if (edge.target == node_id and edge.input >= len(node.inputs))
            or (edge.source == node_id and edge.output >= len(node.outputs))
        ]
        if old.is_delay and not node.is_delay:
            # Edges into the node start counting as dependencies.
            kept = [edge for edge in self._edges.values() if edge not in dropped]
            deps = DependencyGraph.from_edges(
                (
                    (edge.source, edge.target)
                    for edge in kept
                    if edge.target == node_id or not self._nodes[edge.target].is_delay
                ),
                nodes=self._nodes,
            )
            cycle = deps.find_cycle()
            if cycle is not None:
                msg = f"Replacing node {node_id} would close the cycle {cycle}"
                raise CycleViolation(msg)

        for edge in dropped:
            self.remove_edge(edge)
        ports_changed = self._drop_exposed(node_id, keep_inputs=len(node.inputs), keep_outputs=len(node.outputs))
        self._nodes[node_id] = node
        self._emit(GraphEvent(GraphEventKind.NODE_REPLACED, self.graph_id, node_id=node_id))
        if ports_changed:
            self._emit(GraphEvent(GraphEventKind.PORTS_CHANGED, self.graph_id, node_id=node_id))
        return dropped

    def _drop_exposed(self, node_id: int, *, keep_inputs: int, keep_outputs: int) -> bool:
        before = len(self._exposed_inputs) + len(self._exposed_outputs)
        self._exposed_inputs = {
            name: (nid, idx)
            for name, (nid, idx) in self._exposed_inputs.items()
            if nid != node_id or idx < keep_inputs
        }
        self._exposed_outputs = {
            name: (nid, idx)
            for name, (nid, idx) in self._exposed_outputs.items()
            if nid != node_id or idx < keep_outputs
        }
        return before != len(self._exposed_inputs) + len(self._exposed_outputs)

    # -- Labels ------------------------------------------------------------------

    @property
    def labels(self) -> dict[str, int]:
        """Node labels and the ids they name."""
        return dict(self._labels)

    def label_of(self, node_id: int) -> str | None:
        """Return the label of a node, if any."""
        for label, nid in self._labels.items():
            if nid == node_id:
                return label
        return None

    def resolve(self, ref: int | str) -> int:
        """Resolve a node id or label to a node id."""
        if isinstance(ref, int):
            self.node(ref)
            return ref
        if ref in self._labels:
            return self._labels[ref]
        msg = f"No node labelled '{ref}' in graph {self.graph_id}"
        raise KeyError(msg)

    # -- Edges -------------------------------------------------------------------

    @property
    def edges(self) -> list[Edge[int]]:
        """All edges, sorted."""
        return sorted(self._edges.values())

    def add_edge(self, source: int, output: int, target: int, input: int) -> Edge[int]:  # noqa: A002
        """Connect output ``output`` of ``source`` to input ``input`` of ``target``.

        Raises:
            KeyError: If either node does not exist.
            IndexError: If either port index is out of range.
            PortAlreadyConnected: If the input already has an incoming edge.
            CycleViolation: If the edge closes a cycle not broken by a delay.

        """
        source_node = self.node(source)
        target_node = self.node(target)
        if not 0 <= output < len(source_node.outputs):
            msg = f"Node {source} has no output {output}"
            raise IndexError(msg)
        if not 0 <= input < len(target_node.inputs):
            msg = f"Node {target} has no input {input}"
            raise IndexError(msg)
        if (target, input) in self._edges or (target, input) in self._exposed_inputs.values():
            raise PortAlreadyConnected(target, input)
        if not target_node.is_delay and self.dependency_graph().reaches(target, source):
            msg = f"Edge {source}:{output} -> {target}:{input} would create a cycle"
            raise CycleViolation(msg)

        edge = Edge(source, output, target, input)
        self._edges[(target, input)] = edge
        logger.debug("Connected %d:%d -> %d:%d", source, output, target, input)
        self._emit(GraphEvent(GraphEventKind.EDGE_ADDED, self.graph_id, edge=edge))
        return edge

    def remove_edge(self, edge: Edge[int]) -> None:
        """Remove an edge."""
        if self._edges.get((edge.target, edge.input)) != edge:
            msg = f"No edge {edge}"
            raise KeyError(msg)
        del self._edges[(edge.target, edge.input)]
        self._emit(GraphEvent(GraphEventKind.EDGE_REMOVED, self.graph_id, edge=edge))

    def source_of(self, target: int, input: int) -> Edge[int] | None:  # noqa: A002
        """Return the edge feeding an input port, if connected."""
        return self._edges.get((target, input))

    def incoming(self, node_id: int) -> list[Edge[int]]:
        """Edges into a node, by input index."""
        return sorted(edge for edge in self._edges.values() if edge.target == node_id)

    def outgoing(self, node_id: int) -> list[Edge[int]]:
        """Edges out of a node, sorted."""
        return sorted(edge for edge in self._edges.values() if edge.source == node_id)

    # -- Exposed ports -----------------------------------------------------------

    @property
    def exposed_inputs(self) -> dict[str, tuple[int, int]]:
        """Graph inputs by name, mapped to (node id, input index)."""
        return dict(self._exposed_inputs)

    @property
    def exposed_outputs(self) -> dict[str, tuple[int, int]]:
        """Graph outputs by name, mapped to (node id, output index)."""
        return dict(self._exposed_outputs)

    def expose_input(self, name: str, node_id: int, input: int) -> None:  # noqa: A002
        """Expose an input port of an inner node as a graph input."""
        self._check_exposed_name(name, self._exposed_inputs)
        if not 0 <= input < len(self.node(node_id).inputs):
            msg = f"Node {node_id} has no input {input}"
            raise IndexError(msg)
        if (node_id, input) in self._edges or (node_id, input) in self._exposed_inputs.values():
            raise PortAlreadyConnected(node_id, input)
        self._exposed_inputs[name] = (node_id, input)
        self._emit(GraphEvent(GraphEventKind.PORTS_CHANGED, self.graph_id, node_id=node_id))

    def expose_output(self, name: str, node_id: int, output: int) -> None:
        """Expose an output port of an inner node as a graph output."""
        self._check_exposed_name(name, self._exposed_outputs)
        if not 0 <= output < len(self.node(node_id).outputs):
            msg = f"Node {node_id} has no output {output}"
            raise IndexError(msg)
        self._exposed_outputs[name] = (node_id, output)
        self._emit(GraphEvent(GraphEventKind.PORTS_CHANGED, self.graph_id, node_id=node_id))

    def unexpose_input(self, name: str) -> None:
        """Remove an exposed graph input."""
        node_id, _ = self._exposed_inputs.pop(name)
        self._emit(GraphEvent(GraphEventKind.PORTS_CHANGED, self.graph_id, node_id=node_id))

    def unexpose_output(self, name: str) -> None:
        """Remove an exposed graph output."""
        node_id, _ = self._exposed_outputs.pop(name)
        self._emit(GraphEvent(GraphEventKind.PORTS_CHANGED, self.graph_id, node_id=node_id))

    @staticmethod
    def _check_exposed_name(name: str, existing: dict[str, tuple[int, int]]) -> None:
        if not name.isidentifier():
            msg = f"Exposed port name '{name}' is not a valid identifier"
            raise ValueError(msg)
        if name in existing:
            msg = f"Port name '{name}' is already exposed"
            raise ValueError(msg)

    # -- Queries -----------------------------------------------------------------

    def dependency_graph(self) -> DependencyGraph[int]:
        """Node-level dependencies; edges into delay nodes are not dependencies."""
        return DependencyGraph.from_edges(
            ((edge.source, edge.target) for edge in self._edges.values() if not self._nodes[edge.target].is_delay),
            nodes=self._nodes,
        )

    def topological_order(self, roots: Iterable[int] | None = None) -> list[int]:
        """Node ids with every node after all its dependencies.

        Ties between independent nodes are broken by ascending id. With
        ``roots``, only the roots and their descendants are returned.
        """
        deps = self.dependency_graph()
        if roots is None:
            return deps.topological_order()
        roots = list(roots)
        for root in roots:
            self.node(root)
        return deps.topological_order(within={*roots, *deps.descendants(*roots)})

    def upstream(self, node_id: int) -> frozenset[int]:
        """All nodes this node transitively depends on."""
        self.node(node_id)
        return self.dependency_graph().ancestors(node_id)

    def downstream(self, node_id: int) -> frozenset[int]:
        """All nodes transitively depending on this node."""
        self.node(node_id)
        return self.dependency_graph().descendants(node_id)

    def entrypoints(self) -> list[int]:
        """Ids of entrypoint nodes in ascending order."""
        return [node_id for node_id, node in self.nodes.items() if node.entrypoint]

    # -- Events ------------------------------------------------------------------

    def subscribe(self, listener: GraphListener) -> Callable[[], None]:
        """Register a structural-change listener; returns a function removing it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: GraphEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        """Check whether a node id exists."""
        return node_id in self._nodes

    def __iter__(self) -> Iterator[int]:
        """Iterate node ids in ascending order."""
        return iter(sorted(self._nodes))
