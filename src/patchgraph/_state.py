"""State slots of stateful nodes, kept independently of compiled units."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from ._graph import Graph, GraphEvent, GraphEventKind
from ._node import GraphBody

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping

    from ._node import NodePath

logger = logging.getLogger(__name__)


def as_path(node: int | NodePath) -> NodePath:
    """Normalize a node id or path to a path."""
    if isinstance(node, int):
        return (node,)
    return tuple(node)


class StateStore:
    """State slots of one graph, keyed by node path.

    A slot is created the first time a stateful node runs and survives
    recompilation. It is only discarded when its node disappears, either
    through :meth:`drop`, :meth:`retain` or, for an attached graph, when the
    node is removed from the graph.
    """

    def __init__(self, graph_id: str, slots: Mapping[NodePath, Any] | None = None) -> None:
        self.graph_id = graph_id
        self._slots: dict[NodePath, Any] = dict(slots or {})
        self._attached: dict[NodePath, Callable[[], None]] = {}

    def get_or_init(self, node: int | NodePath, init: Callable[[], Any]) -> Any:
        """Return the slot value, creating it with ``init()`` if it does not exist."""
        path = as_path(node)
        if path not in self._slots:
            self._slots[path] = init()
            logger.debug("Initialized state slot %s of graph %s", path, self.graph_id)
        return self._slots[path]

    def get(self, node: int | NodePath) -> Any:
        """Return the slot value.

        Raises:
            KeyError: If the slot does not exist.

        """
        path = as_path(node)
        try:
            return self._slots[path]
        except KeyError:
            msg = f"No state slot for node {path} in graph {self.graph_id}"
            raise KeyError(msg) from None

    def set(self, node: int | NodePath, value: Any) -> None:
        """Write a slot value."""
        self._slots[as_path(node)] = value

    def drop(self, node: int | NodePath) -> list[NodePath]:
        """Drop a slot and the slots of everything nested under it; return dropped paths."""
        prefix = as_path(node)
        dropped = sorted(path for path in self._slots if path[: len(prefix)] == prefix)
        for path in dropped:
            del self._slots[path]
        if dropped:
            logger.debug("Dropped state slots %s of graph %s", dropped, self.graph_id)
        return dropped

    def retain(self, paths: Iterable[int | NodePath]) -> list[NodePath]:
        """Keep only the given slots; return the dropped paths."""
        keep = {as_path(path) for path in paths}
        dropped = sorted(path for path in self._slots if path not in keep)
        for path in dropped:
            del self._slots[path]
        if dropped:
            logger.info("Dropped %d state slot(s) of removed nodes: %s", len(dropped), dropped)
        return dropped

    def snapshot(self) -> dict[NodePath, Any]:
        """Return a deep copy of all slots."""
        return copy.deepcopy(self._slots)

    def restore(self, snapshot: Mapping[NodePath, Any]) -> None:
        """Replace all slots with a snapshot."""
        self._slots = {as_path(path): value for path, value in copy.deepcopy(dict(snapshot)).items()}

    def paths(self) -> list[NodePath]:
        """Paths of existing slots, sorted."""
        return sorted(self._slots)

    # -- Graph lifecycle ---------------------------------------------------------

    def attach(self, graph: Graph, prefix: NodePath = ()) -> Callable[[], None]:
        """Follow a graph's structural changes so removed nodes lose their slots.

        Nested graphs are followed too, under their parent node's path. Returns a
        function that detaches from the graph and all nested graphs.
        """

        def _on_event(event: GraphEvent) -> None:
            if event.node_id is None:
                return
            path = (*prefix, event.node_id)
            if event.kind is GraphEventKind.NODE_REMOVED:
                self._detach_nested(path)
                self.drop(path)
            elif event.kind in (GraphEventKind.NODE_ADDED, GraphEventKind.NODE_REPLACED):
                self._detach_nested(path)
                self._attach_nested(graph, event.node_id, path)

        unsubscribe = graph.subscribe(_on_event)
        for node_id in graph:
            self._attach_nested(graph, node_id, (*prefix, node_id))

        def _detach() -> None:
            unsubscribe()
            for path in [p for p in self._attached if p[: len(prefix)] == prefix]:
                self._detach_nested(path)

        return _detach

    def _attach_nested(self, graph: Graph, node_id: int, path: NodePath) -> None:
        body = graph.node(node_id).body
        if isinstance(body, GraphBody):
            self._attached[path] = self.attach(body.graph, path)

    def _detach_nested(self, path: NodePath) -> None:
        detach = self._attached.pop(path, None)
        if detach is not None:
            detach()

    def __contains__(self, node: object) -> bool:
        """Check whether a slot exists for a node id or path."""
        if not isinstance(node, int | tuple):
            return False
        return as_path(node) in self._slots

    def __len__(self) -> int:
        """Return the number of slots."""
        return len(self._slots)

    def __iter__(self) -> Iterator[NodePath]:
        """Iterate slot paths in sorted order."""
        return iter(self.paths())
