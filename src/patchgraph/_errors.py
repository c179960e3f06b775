"""Exception hierarchy for patchgraph.

Edit-time errors (signature, wiring, cycles) are raised before any mutation
happens. Lowering errors prevent a new compiled unit from being produced.
Evaluation errors abort a single cycle only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._node import NodePath


class PatchGraphError(Exception):
    """Base class for all patchgraph errors."""


class SignatureMismatch(PatchGraphError):  # noqa: N818
    """A node's declared ports do not agree with its body."""


class PortAlreadyConnected(PatchGraphError):  # noqa: N818
    """An input port already has an incoming edge."""

    def __init__(self, node_id: int, input_index: int) -> None:
        self.node_id = node_id
        self.input_index = input_index
        super().__init__(f"Input {input_index} of node {node_id} is already connected")


class CycleViolation(PatchGraphError):  # noqa: N818
    """An edge or graph introduces a cycle not broken by a delay node."""


class UnsupportedBody(PatchGraphError):  # noqa: N818
    """A node body cannot be expressed with the runtime's primitives."""

    def __init__(self, path: NodePath | None, reason: str) -> None:
        self.path = path
        self.reason = reason
        where = f"node {format_path(path)}" if path is not None else "node body"
        super().__init__(f"Unsupported body for {where}: {reason}")


class RuntimeEvaluationError(PatchGraphError):
    """A node body raised while a cycle was running.

    Attributes:
        path: Path of the failing node.
        position: Index of the failing node within the cycle's evaluation order.

    """

    def __init__(self, path: NodePath, position: int, cause: BaseException) -> None:
        self.path = path
        self.position = position
        self.cause = cause
        super().__init__(
            f"Node {format_path(path)} failed at position {position}: {type(cause).__name__}: {cause}",
        )


class CycleCancelled(PatchGraphError):  # noqa: N818
    """The running cycle was cancelled before reaching the given node."""

    def __init__(self, path: NodePath | None) -> None:
        self.path = path
        where = f" before node {format_path(path)}" if path is not None else ""
        super().__init__(f"Evaluation cycle cancelled{where}")


class CycleInProgress(PatchGraphError):  # noqa: N818
    """Another cycle is already running on the same coordinator."""


class InvalidStateTransition(PatchGraphError):  # noqa: N818
    """The coordinator cannot perform the operation in its current state."""


class UnknownNodeKind(PatchGraphError):  # noqa: N818
    """A persisted node carries a type tag that is not registered."""

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"Unknown node kind '{tag}'")


class PortSignatureDrift(PatchGraphError):  # noqa: N818
    """A persisted node's ports differ from the ports its registered kind builds now."""

    def __init__(self, node_id: int, tag: str, persisted: object, current: object) -> None:
        self.node_id = node_id
        self.tag = tag
        self.persisted = persisted
        self.current = current
        super().__init__(
            f"Port signature of node {node_id} ('{tag}') drifted: persisted {persisted}, registered {current}",
        )


class DocumentError(PatchGraphError):
    """A persisted graph document is malformed or cannot be written."""


def format_path(path: NodePath) -> str:
    """Format a node path for messages, e.g. ``(3, 1)`` becomes ``3/1``."""
    return "/".join(str(part) for part in path)
