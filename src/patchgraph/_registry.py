"""Registry mapping persisted type tags to node constructors."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, TypeAlias, overload

from ._context import get_registry, reset_registry, set_registry
from ._errors import DocumentError, UnknownNodeKind
from ._node import MISSING, Node

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from ._graph import Graph

logger = logging.getLogger(__name__)

NodeFactory: TypeAlias = "Callable[..., Node]"


class NodeRegistry:
    """String tags mapped to functions building a node from keyword parameters.

    Example:
        >>> registry = default_registry()
        >>> @registry.register("double")
        ... def double() -> Node:
        ...     return Node.expr("$x * 2")
        >>> registry.create("double").tag
        'double'

    """

    def __init__(self) -> None:
        self._factories: dict[str, NodeFactory] = {}
        self._graphs: dict[str, Graph] = {}

    @overload
    def register(self, tag: str) -> Callable[[NodeFactory], NodeFactory]: ...

    @overload
    def register(self, tag: str, factory: NodeFactory) -> NodeFactory: ...

    def register(
        self, tag: str, factory: NodeFactory | None = None
    ) -> NodeFactory | Callable[[NodeFactory], NodeFactory]:
        """Register a factory for a tag; usable as a decorator."""

        def _register(func: NodeFactory) -> NodeFactory:
            if tag in self._factories:
                msg = f"Node kind '{tag}' is already registered"
                raise ValueError(msg)
            self._factories[tag] = func
            logger.debug("Registered node kind '%s'", tag)
            return func

        if factory is None:
            return _register
        return _register(factory)

    def create(self, tag: str, params: Mapping[str, Any] | None = None) -> Node:
        """Build a node of a registered kind.

        Raises:
            UnknownNodeKind: If the tag is not registered.
            DocumentError: If the parameters do not fit the factory.

        """
        factory = self._factories.get(tag)
        if factory is None:
            raise UnknownNodeKind(tag)
        params = dict(params or {})
        # Factories of composite kinds look up further nodes and graphs here.
        token = set_registry(self)
        try:
            node = factory(**params)
        except TypeError as e:
            msg = f"Invalid parameters for node kind '{tag}': {e}"
            raise DocumentError(msg) from e
        finally:
            reset_registry(token)
        return replace(node, tag=tag, params=params)

    def register_graph(self, name: str, graph: Graph) -> None:
        """Make a graph available to ``ref`` nodes under ``name``."""
        if name in self._graphs:
            msg = f"Graph '{name}' is already registered"
            raise ValueError(msg)
        self._graphs[name] = graph
        logger.debug("Registered graph '%s' (%s)", name, graph.graph_id)

    def graph(self, name: str) -> Graph:
        """The graph registered under ``name``.

        Raises:
            KeyError: If no graph is registered under that name.

        """
        try:
            return self._graphs[name]
        except KeyError:
            msg = f"No graph registered as '{name}'"
            raise KeyError(msg) from None

    def ref(self, name: str) -> Node:
        """A node running the graph registered under ``name``.

        The node behaves like :meth:`Node.graph` but is persisted by name only,
        so every document referring to it picks up the registered graph.
        """
        return replace(Node.graph(self.graph(name)), tag="ref", params={"name": name})

    def tags(self) -> list[str]:
        """Registered tags, sorted."""
        return sorted(self._factories)

    def __contains__(self, tag: object) -> bool:
        """Check whether a tag is registered."""
        return tag in self._factories


def _expr(  # noqa: PLR0913
    src: str,
    inputs: list[str] | None = None,
    outputs: list[str] | None = None,
    entrypoint: bool = False,  # noqa: FBT001, FBT002
    branches: list[list[int]] | None = None,
    stateful: bool = False,  # noqa: FBT001, FBT002
) -> Node:
    # Stateful nodes get a placeholder initializer; the persisted one is applied on load.
    return Node.expr(
        src,
        inputs,
        outputs if outputs is not None else ("out",),
        entrypoint=entrypoint,
        branches=branches,
        state=None if stateful else MISSING,
    )


def _fn(  # noqa: PLR0913
    ref: str,
    inputs: list[str] | None = None,
    outputs: list[str] | None = None,
    entrypoint: bool = False,  # noqa: FBT001, FBT002
    branches: list[list[int]] | None = None,
    stateful: bool = False,  # noqa: FBT001, FBT002
) -> Node:
    return Node.fn(
        ref,
        inputs or (),
        outputs if outputs is not None else ("out",),
        entrypoint=entrypoint,
        branches=branches,
        state=None if stateful else MISSING,
    )


def _delay(initial: Any = None) -> Node:
    return Node.delay(initial)


def _entry(outputs: list[str] | None = None) -> Node:
    return Node.entry(outputs if outputs is not None else ("out",))


def _function(node: Mapping[str, Any]) -> Node:
    if "tag" not in node:
        msg = "A function node needs the tag of the node it wraps"
        raise DocumentError(msg)
    inner = _current_registry().create(node["tag"], node.get("params"))
    return Node.function(inner)


def _apply() -> Node:
    return Node.apply()


def _ref(name: str) -> Node:
    try:
        return _current_registry().ref(name)
    except KeyError as e:
        raise DocumentError(e.args[0]) from e


def _current_registry() -> NodeRegistry:
    return get_registry() or default_registry()


def _graph(document: Mapping[str, Any]) -> Node:
    # Deferred: _io needs this module to build its default registry.
    from ._io import GraphDocument, document_to_graph  # noqa: PLC0415

    graph, _ = document_to_graph(GraphDocument.model_validate(document), _current_registry())
    return Node.graph(graph)


def default_registry() -> NodeRegistry:
    """A registry knowing the built-in node kinds.

    These are expr, fn, graph, delay and entry, plus function, apply and ref
    for function values and references to registered graphs.
    """
    registry = NodeRegistry()
    registry.register("expr", _expr)
    registry.register("fn", _fn)
    registry.register("graph", _graph)
    registry.register("delay", _delay)
    registry.register("entry", _entry)
    registry.register("function", _function)
    registry.register("apply", _apply)
    registry.register("ref", _ref)
    return registry
