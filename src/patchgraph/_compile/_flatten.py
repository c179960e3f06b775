"""Inline nested graphs into a single graph addressed by node paths."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeAlias

from .._errors import CycleViolation, SignatureMismatch, format_path
from .._graph import DependencyGraph, Edge
from .._node import GraphBody, PortSignature

if TYPE_CHECKING:
    from .._graph import Graph
    from .._node import Node, NodePath

logger = logging.getLogger(__name__)

PortRef: TypeAlias = "tuple[NodePath, int]"


@dataclass(frozen=True, slots=True)
class FlatGraph:
    """A graph with every nested graph inlined.

    Attributes:
        nodes: Leaf nodes by path, in ascending path order.
        edges: Edges between leaf nodes.
        inputs: Exposed input names mapped to the inner ports they feed.
        outputs: Exposed output names mapped to the inner port producing them.
        labels: Top-level labels mapped to paths.
        deps: Node dependencies; edges into delay nodes are excluded.

    """

    nodes: dict[NodePath, Node]
    edges: tuple[Edge[NodePath], ...]
    inputs: dict[str, tuple[PortRef, ...]]
    outputs: dict[str, PortRef]
    labels: dict[str, NodePath]
    deps: DependencyGraph[NodePath] = field(repr=False)

    def incoming(self, path: NodePath) -> dict[int, PortRef]:
        """Sources of a node's connected inputs, by input index."""
        return {edge.input: (edge.source, edge.output) for edge in self.edges if edge.target == path}

    def entrypoints(self) -> list[NodePath]:
        """Paths of entrypoint nodes in ascending order."""
        return [path for path, node in self.nodes.items() if node.entrypoint]


@dataclass(slots=True)
class _Builder:
    nodes: dict[NodePath, Node] = field(default_factory=dict)
    edges: list[Edge[NodePath]] = field(default_factory=list)

    def inline(self, graph: Graph, prefix: NodePath) -> tuple[dict[str, list[PortRef]], dict[str, PortRef]]:
        """Add a graph's nodes under ``prefix``; return its exposed ports as leaf ports."""
        nested: dict[int, tuple[dict[str, list[PortRef]], dict[str, PortRef]]] = {}
        for node_id, node in graph.nodes.items():
            path = (*prefix, node_id)
            if isinstance(node.body, GraphBody):
                inner = node.body.graph
                exposed = PortSignature(tuple(inner.exposed_inputs), tuple(inner.exposed_outputs))
                if node.port_names() != exposed:
                    msg = (
                        f"Nested graph node {format_path(path)} declares {node.port_names()} "
                        f"but its graph now exposes {exposed}; replace the node to pick up the change"
                    )
                    raise SignatureMismatch(msg)
                nested[node_id] = self.inline(inner, path)
            else:
                self.nodes[path] = node

        def consumers(node_id: int, input_index: int) -> list[PortRef]:
            if node_id in nested:
                name = graph.node(node_id).inputs[input_index].name
                return nested[node_id][0].get(name, [])
            return [((*prefix, node_id), input_index)]

        def producer(node_id: int, output_index: int) -> PortRef | None:
            if node_id in nested:
                name = graph.node(node_id).outputs[output_index].name
                return nested[node_id][1].get(name)
            return ((*prefix, node_id), output_index)

        for edge in graph.edges:
            source = producer(edge.source, edge.output)
            if source is None:
                continue
            for target in consumers(edge.target, edge.input):
                self.edges.append(Edge(source[0], source[1], target[0], target[1]))

        inputs = {name: consumers(node_id, index) for name, (node_id, index) in graph.exposed_inputs.items()}
        outputs: dict[str, PortRef] = {}
        for name, (node_id, index) in graph.exposed_outputs.items():
            port = producer(node_id, index)
            if port is not None:
                outputs[name] = port
        return inputs, outputs


def flatten(graph: Graph) -> FlatGraph:
    """Inline nested graphs and check the result is free of unbroken cycles.

    Raises:
        SignatureMismatch: If a nested graph node's ports are stale.
        CycleViolation: If the flat dependency relation has a cycle.

    """
    builder = _Builder()
    inputs, outputs = builder.inline(graph, ())
    nodes = {path: builder.nodes[path] for path in sorted(builder.nodes)}
    edges = tuple(sorted(builder.edges))
    deps = DependencyGraph.from_edges(
        ((edge.source, edge.target) for edge in edges if not nodes[edge.target].is_delay),
        nodes=nodes,
    )
    cycle = deps.find_cycle()
    if cycle is not None:
        msg = f"Graph contains a cycle not broken by a delay: {' -> '.join(format_path(p) for p in cycle)}"
        raise CycleViolation(msg)

    labels = {label: (node_id,) for label, node_id in graph.labels.items() if (node_id,) in nodes}
    logger.debug("Flattened graph %s into %d nodes and %d edges", graph.graph_id, len(nodes), len(edges))
    return FlatGraph(
        nodes=nodes,
        edges=edges,
        inputs={name: tuple(ports) for name, ports in inputs.items()},
        outputs=outputs,
        labels=labels,
        deps=deps,
    )
