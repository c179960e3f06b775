"""Immutable "runs after" relation between node keys."""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from ._algorithms import find_cycle, topological_sort

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class DependencyGraph(Generic[T]):
    """Which node reads from which, over plain node ids or node paths.

    ``_upstream[b] == {a}`` means b reads an output of a, so a must run
    before b; ``_downstream`` is the same relation seen from a. Both
    mappings hold every node, including isolated ones.

    Callers leave out edges into delay nodes: a delay reads its input at
    the end of a cycle.
    """

    _upstream: dict[T, frozenset[T]] = field(default_factory=dict)
    _downstream: dict[T, frozenset[T]] = field(default_factory=dict)

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[T, T]], nodes: Iterable[T] = ()) -> DependencyGraph[T]:
        """Build the relation from ``(producer, consumer)`` pairs.

        ``nodes`` adds keys that no edge touches, so that they still show up
        in :meth:`topological_order`.

        Example:
            >>> deps = DependencyGraph.from_edges([(0, 2), (1, 2)], nodes=[3])
            >>> deps.topological_order()
            [0, 1, 2, 3]

        """
        upstream: dict[T, set[T]] = {node: set() for node in nodes}
        downstream: dict[T, set[T]] = {node: set() for node in upstream}
        for producer, consumer in edges:
            upstream.setdefault(producer, set())
            downstream.setdefault(producer, set()).add(consumer)
            upstream.setdefault(consumer, set()).add(producer)
            downstream.setdefault(consumer, set())
        return cls(
            _upstream={node: frozenset(keys) for node, keys in upstream.items()},
            _downstream={node: frozenset(keys) for node, keys in downstream.items()},
        )

    @property
    def nodes(self) -> frozenset[T]:
        return frozenset(self._upstream)

    def predecessors(self, node: T) -> frozenset[T]:
        """Nodes whose outputs ``node`` reads directly."""
        return self._upstream.get(node, frozenset())

    def successors(self, node: T) -> frozenset[T]:
        """Nodes reading an output of ``node`` directly."""
        return self._downstream.get(node, frozenset())

    def roots(self) -> frozenset[T]:
        """Nodes that read from nobody."""
        return frozenset(node for node, deps in self._upstream.items() if not deps)

    def ancestors(self, *nodes: T) -> frozenset[T]:
        """Everything the given nodes transitively read from.

        A start node is only part of the result if another start node (or
        itself, through a cycle) depends on it.
        """
        return self._closure(nodes, self.predecessors)

    def descendants(self, *nodes: T) -> frozenset[T]:
        """Everything transitively reading from the given nodes."""
        return self._closure(nodes, self.successors)

    def reaches(self, source: T, target: T) -> bool:
        """Whether ``target`` is ``source`` or transitively reads from it."""
        return source == target or target in self.descendants(source)

    def topological_order(self, within: Collection[T] | None = None) -> list[T]:
        """Producers before consumers, ties broken by ascending key.

        With ``within``, only those nodes are ordered and only the edges
        between them count.

        Raises:
            ValueError: If the (restricted) relation has a cycle.

        """
        deps = self if within is None else self.subgraph(frozenset(within))
        return topological_sort(deps._downstream)

    def find_cycle(self) -> list[T] | None:
        """One cycle as ``[a, ..., a]``, or None."""
        return find_cycle(self._downstream)

    def subgraph(self, nodes: frozenset[T]) -> DependencyGraph[T]:
        """Restrict to ``nodes``, keeping only the edges between them."""
        return DependencyGraph(
            _upstream={node: self.predecessors(node) & nodes for node in nodes},
            _downstream={node: self.successors(node) & nodes for node in nodes},
        )

    def _closure(self, starts: Iterable[T], step: Callable[[T], frozenset[T]]) -> frozenset[T]:
        seen: set[T] = set()
        stack = [neighbour for start in starts for neighbour in step(start)]
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(step(node))
        return frozenset(seen)

    def __len__(self) -> int:
        return len(self._upstream)

    def __contains__(self, node: object) -> bool:
        return node in self._upstream

    def __iter__(self) -> Iterator[T]:
        return iter(self._upstream)
