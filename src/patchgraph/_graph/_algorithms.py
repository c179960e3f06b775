"""Ordering and cycle search over successor mappings."""

import heapq
from collections.abc import Collection, Hashable, Mapping
from typing import TypeVar

T = TypeVar("T", bound=Hashable)


def topological_sort(successors: Mapping[T, Collection[T]]) -> list[T]:
    """Kahn's algorithm with a min-heap of ready nodes.

    ``successors[a]`` lists the nodes that read from ``a``. Whenever several
    nodes are ready the smallest goes first, so the result depends only on the
    relation and never on mapping order. Keys must be mutually comparable.

    Raises:
        ValueError: If some nodes can never become ready (a cycle).

    Example:
        >>> topological_sort({2: [0], 1: [0], 0: []})
        [1, 2, 0]

    """
    waiting = dict.fromkeys(successors, 0)
    for targets in successors.values():
        for target in targets:
            waiting[target] = waiting.get(target, 0) + 1

    ready = [node for node, count in waiting.items() if count == 0]
    heapq.heapify(ready)
    order: list[T] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for target in successors.get(node, ()):
            waiting[target] -= 1
            if not waiting[target]:
                heapq.heappush(ready, target)

    if len(order) != len(waiting):
        msg = "Cycle detected in graph"
        raise ValueError(msg)
    return order


def find_cycle(successors: Mapping[T, Collection[T]]) -> list[T] | None:
    """Return one cycle of the graph as a list of nodes, or None if it is acyclic.

    The returned list starts and ends with the same node, e.g. ``[a, b, a]``.
    """
    visiting: set[T] = set()
    done: set[T] = set()
    trail: list[T] = []

    def _visit(node: T) -> list[T] | None:
        visiting.add(node)
        trail.append(node)
        for successor in sorted(successors.get(node, ())):  # type: ignore[type-var]
            if successor in visiting:
                return [*trail[trail.index(successor) :], successor]
            if successor not in done:
                found = _visit(successor)
                if found is not None:
                    return found
        visiting.discard(node)
        done.add(node)
        trail.pop()
        return None

    for start in sorted(successors):  # type: ignore[type-var]
        if start not in done:
            found = _visit(start)
            if found is not None:
                return found
    return None
