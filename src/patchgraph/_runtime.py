"""The embedded runtime executing compiled units.

A compiled unit is Python module source. The runtime executes it in a fresh
namespace whose builtins are restricted to a fixed set of primitives, so node
expressions can only reach what the runtime explicitly offers.
"""

from __future__ import annotations

import builtins
import linecache
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ._errors import UnsupportedBody

if TYPE_CHECKING:
    from collections.abc import Callable

    from ._compile import CompiledUnit
    from ._node import NodePath

logger = logging.getLogger(__name__)

SAFE_BUILTINS: tuple[str, ...] = (
    "abs",
    "all",
    "any",
    "ArithmeticError",
    "bool",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "Exception",
    "filter",
    "float",
    "format",
    "frozenset",
    "hash",
    "int",
    "isinstance",
    "issubclass",
    "KeyError",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "TypeError",
    "ValueError",
    "zip",
    "ZeroDivisionError",
)


def default_primitives() -> dict[str, Any]:
    """Primitives available to every node body."""
    primitives: dict[str, Any] = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    primitives["math"] = math
    return primitives


@dataclass(slots=True)
class Runtime:
    """Executes compiled units with a restricted set of primitive names.

    Example:
        >>> runtime = Runtime()
        >>> runtime.register("clamp", lambda x, lo, hi: max(lo, min(hi, x)))
        >>> runtime.is_primitive("clamp")
        True

    """

    primitives: dict[str, Any] = field(default_factory=default_primitives)
    _filenames: dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def register(self, name: str, value: Any) -> None:
        """Offer an additional primitive to node bodies."""
        if not name.isidentifier() or name.startswith("_"):
            msg = f"Invalid primitive name '{name}'"
            raise ValueError(msg)
        self.primitives[name] = value

    def is_primitive(self, name: str) -> bool:
        """Check whether a name is available to node bodies."""
        return name in self.primitives

    def load(self, unit: CompiledUnit) -> LoadedUnit:
        """Execute the unit's source and return its namespace.

        Raises:
            UnsupportedBody: If the source cannot be executed by this runtime.

        """
        filename = f"<patchgraph:{unit.graph_id}:{unit.fingerprint[:12]}>"
        namespace: dict[str, Any] = {
            "__builtins__": {**self.primitives, "__import__": builtins.__import__},
            "__name__": f"patchgraph_unit_{unit.fingerprint[:12]}",
        }
        try:
            code = compile(unit.source, filename, "exec")
            exec(code, namespace)  # noqa: S102
        except Exception as e:
            msg = f"runtime rejected compiled unit: {type(e).__name__}: {e}"
            raise UnsupportedBody(None, msg) from e

        # Lets tracebacks from node bodies show the generated lines; only the
        # latest unit of each graph stays in the cache.
        self.unload(unit.graph_id)
        linecache.cache[filename] = (len(unit.source), None, unit.source.splitlines(keepends=True), filename)
        self._filenames[unit.graph_id] = filename
        logger.debug("Loaded unit %s (%d steps)", filename, len(unit.steps))
        return LoadedUnit(unit=unit, namespace=namespace)

    def unload(self, graph_id: str) -> None:
        """Forget the source lines of the unit last loaded for a graph."""
        filename = self._filenames.pop(graph_id, None)
        if filename is not None:
            linecache.cache.pop(filename, None)


@dataclass(frozen=True, slots=True)
class LoadedUnit:
    """A compiled unit whose symbols live in a runtime namespace."""

    unit: CompiledUnit
    namespace: dict[str, Any]

    def symbol(self, name: str) -> Callable[..., Any]:
        """Look up a symbol defined by the unit."""
        try:
            return self.namespace[name]
        except KeyError:
            msg = f"Compiled unit defines no symbol '{name}'"
            raise KeyError(msg) from None

    def step(self, path: NodePath) -> Callable[..., Any]:
        """The step function of a node."""
        return self.symbol(self.unit.steps[path])

    def push_fn(self, path: NodePath) -> Callable[..., Any]:
        """The push function of an entrypoint."""
        return self.symbol(self.unit.entrypoints[path])

    def pull_fn(self, path: NodePath) -> Callable[..., Any]:
        """The pull function of a node."""
        return self.symbol(self.unit.pulls[path])
