"""The compiled artifact of a graph."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ._schedule import cycle_roots, eval_order

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .._graph import Graph
    from .._node import NodePath
    from ._flatten import FlatGraph, PortRef


@dataclass(frozen=True, slots=True)
class CompiledUnit:
    """Python source for one graph plus the symbols a host may call.

    Attributes:
        graph_id: Id of the compiled graph.
        source: The generated module source.
        flat: The flattened graph the source was generated from.
        steps: Step function symbol of every node.
        entrypoints: Push function symbol of every entrypoint.
        pulls: Pull function symbol of every exposed output node and sink.
        graph: The graph compiled, if the unit was built by
            :func:`compile_graph`; not part of equality.

    """

    graph_id: str
    source: str
    flat: FlatGraph = field(repr=False)
    steps: dict[NodePath, str] = field(repr=False)
    entrypoints: dict[NodePath, str]
    pulls: dict[NodePath, str]
    graph: Graph | None = field(default=None, repr=False, compare=False)

    @property
    def fingerprint(self) -> str:
        """SHA-256 of the source."""
        return hashlib.sha256(self.source.encode()).hexdigest()

    @property
    def outputs(self) -> dict[str, PortRef]:
        """Exposed outputs by name."""
        return self.flat.outputs

    @property
    def inputs(self) -> dict[str, tuple[PortRef, ...]]:
        """Exposed inputs by name."""
        return self.flat.inputs

    @property
    def labels(self) -> dict[str, NodePath]:
        """Top-level node labels."""
        return self.flat.labels

    @property
    def stateful_paths(self) -> frozenset[NodePath]:
        """Paths of every node owning a state slot."""
        return frozenset(path for path, node in self.flat.nodes.items() if node.stateful)

    def order(self, push: Iterable[NodePath] = (), pull: Iterable[NodePath] = ()) -> list[NodePath]:
        """Evaluation order of a cycle serving the given pushes and pulls."""
        return eval_order(self.flat, push, pull)

    def roots(self, push: Iterable[NodePath] = (), pull: Iterable[NodePath] = ()) -> frozenset[NodePath]:
        """Nodes of such a cycle that run without a live input."""
        return cycle_roots(self.flat, push, pull)
