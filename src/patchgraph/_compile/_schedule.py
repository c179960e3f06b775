"""Required-set scheduling shared by the compiler and the coordinator.

A pass is planned the same way whether it serves a push, pulls or both: the
nodes needed by each request are unioned into one required set, which is then
ordered by a single deterministic topological pass. The coordinator runs one
pass per pushed entrypoint and merges the pulls into the last one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .._node import NodePath
    from ._flatten import FlatGraph


def required_nodes(
    flat: FlatGraph, push: Iterable[NodePath] = (), pull: Iterable[NodePath] = ()
) -> frozenset[NodePath]:
    """Union of the pushed regions and everything upstream of the pulled nodes.

    A pushed region is the entrypoint and everything downstream of it, plus
    the producers of its side inputs, so a node reached by the push reads the
    same values a pull would give it. Delay nodes fed from the region are
    included so they can store the value that reached them.
    """
    push = list(push)
    for path in push:
        _check(flat, path)
    pushed = {*push, *flat.deps.descendants(*push)}
    if pushed:
        pushed |= flat.deps.ancestors(*pushed)
        pushed |= {
            edge.target for edge in flat.edges if edge.source in pushed and flat.nodes[edge.target].is_delay
        }

    pull = list(pull)
    for path in pull:
        _check(flat, path)
    pulled = {*pull, *flat.deps.ancestors(*pull)}

    return frozenset(pushed | pulled)


def eval_order(flat: FlatGraph, push: Iterable[NodePath] = (), pull: Iterable[NodePath] = ()) -> list[NodePath]:
    """Topological order of the required set, ties broken by ascending path."""
    required = required_nodes(flat, push, pull)
    return flat.deps.topological_order(within=required)


def cycle_roots(flat: FlatGraph, push: Iterable[NodePath] = (), pull: Iterable[NodePath] = ()) -> frozenset[NodePath]:
    """Nodes that run without waiting for a live input.

    These are the pushed entrypoints and the required nodes without
    dependencies. Delay nodes are never gated.
    """
    push = list(push)
    return frozenset(push) | flat.deps.subgraph(required_nodes(flat, push, pull)).roots()


def _check(flat: FlatGraph, path: NodePath) -> None:
    if path not in flat.nodes:
        msg = f"No node at path {path}"
        raise KeyError(msg)
