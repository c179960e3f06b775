"""Lowering of graphs into compiled units for the embedded runtime."""

import logging

from .._graph import Graph
from .._runtime import Runtime
from ._emit import emit_source, path_suffix, pull_targets
from ._flatten import FlatGraph, PortRef, flatten
from ._schedule import cycle_roots, eval_order, required_nodes
from ._unit import CompiledUnit

logger = logging.getLogger(__name__)


def compile_graph(graph: Graph, runtime: Runtime | None = None) -> CompiledUnit:
    """Compile a graph into Python source for the runtime.

    Args:
        graph: The graph to compile. Nested graphs are inlined.
        runtime: Runtime whose primitives node expressions may use.

    Returns:
        The compiled unit.

    Raises:
        CycleViolation: If the graph has a cycle not broken by a delay.
        SignatureMismatch: If a nested graph node's ports are stale.
        UnsupportedBody: If a body cannot be expressed with the runtime's primitives.

    """
    if runtime is None:
        runtime = Runtime()
    flat = flatten(graph)
    emitted = emit_source(graph.graph_id, flat, runtime)
    unit = CompiledUnit(
        graph_id=graph.graph_id,
        source=emitted.source,
        flat=flat,
        steps=emitted.steps,
        entrypoints=emitted.entrypoints,
        pulls=emitted.pulls,
        graph=graph,
    )
    logger.info("Compiled graph %s (%d nodes), fingerprint %s", graph.graph_id, len(flat.nodes), unit.fingerprint[:12])
    return unit


__all__ = [
    "CompiledUnit",
    "FlatGraph",
    "PortRef",
    "compile_graph",
    "cycle_roots",
    "eval_order",
    "flatten",
    "path_suffix",
    "pull_targets",
    "required_nodes",
]
