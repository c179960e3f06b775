"""Per-cycle bookkeeping used by the generated step functions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .._errors import CycleCancelled

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterable

    from .._compile import PortRef
    from .._node import NodePath
    from .._state import StateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleContext:
    """Mutable state of one evaluation cycle, passed to steps as ``cx``.

    A cycle is made of passes, one per pushed entrypoint, the last one also
    serving the pulls. Within a pass a node runs when it is a root of the pass
    or at least one of its connected inputs is live, i.e. its source fired
    earlier in the same pass. Inputs whose source is not live read as the
    externally bound value, or None.
    """

    state: StateStore
    roots: frozenset[NodePath]
    bindings: dict[NodePath, dict[int, Any]]
    cancel_event: threading.Event
    values: dict[NodePath, tuple[Any, ...]] = field(default_factory=dict)
    fired: set[PortRef] = field(default_factory=set)
    live: set[PortRef] = field(default_factory=set)
    evaluated: list[NodePath] = field(default_factory=list)
    current: NodePath | None = None
    _deferred: list[tuple[NodePath, int, PortRef | None]] = field(default_factory=list)

    @property
    def position(self) -> int:
        """Index of the current node within the cycle's evaluation order."""
        return len(self.evaluated) - 1

    def begin(self, roots: frozenset[NodePath]) -> None:
        """Start the next pass; outputs fired by earlier passes no longer gate."""
        self.roots = roots
        self.live = set()

    def admit(self, path: NodePath, sources: Iterable[PortRef] | None) -> bool:
        """Decide whether a node runs; ``sources=None`` means never gated.

        Raises:
            CycleCancelled: If cancellation was requested.

        """
        if self.cancel_event.is_set():
            raise CycleCancelled(path)
        if sources is not None and path not in self.roots and not any(src in self.live for src in sources):
            logger.debug("Skipping node %s: no live input", path)
            return False
        self.current = path
        self.evaluated.append(path)
        return True

    def is_live(self, source: PortRef | None) -> bool:
        """Whether an output fired in the current pass."""
        return source is not None and source in self.live

    def arg(self, path: NodePath, index: int, source: PortRef | None) -> Any:
        """Value of input ``index`` of ``path``."""
        if source is not None and source in self.live:
            node, output = source
            return self.values[node][output]
        return self.bindings.get(path, {}).get(index)

    def fire(self, path: NodePath, outputs: tuple[Any, ...], mask: Iterable[int] | None = None) -> None:
        """Record a node's outputs; only the indices in ``mask`` (default all) fire."""
        self.values[path] = tuple(outputs)
        indices = range(len(outputs)) if mask is None else mask
        ports = {(path, index) for index in indices}
        self.live |= ports
        self.fired |= ports

    def defer_store(self, path: NodePath, index: int, source: PortRef | None) -> None:
        """Store input ``index`` of ``path`` into its state slot once the pass completes."""
        self._deferred.append((path, index, source))

    def finish(self) -> None:
        """Commit the values that reached delay nodes during the pass."""
        for path, index, source in self._deferred:
            if self.is_live(source) or index in self.bindings.get(path, {}):
                self.state.set(path, self.arg(path, index, source))
        self._deferred.clear()
        self.current = None
