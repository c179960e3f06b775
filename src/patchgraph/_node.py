"""Node model: ports, bodies and the immutable Node type."""

from __future__ import annotations

import importlib
import inspect
import logging
import re
from dataclasses import dataclass, field, replace
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any, TypeAlias

from ._errors import SignatureMismatch, UnsupportedBody

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ._graph import Graph

logger = logging.getLogger(__name__)

NodePath: TypeAlias = tuple[int, ...]

# `$name` placeholders inside expression bodies.
VAR_PATTERN = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")

MISSING: Any = type("Missing", (), {"__repr__": lambda _self: "MISSING"})()


class NodeKind(StrEnum):
    """The kind of a node."""

    STATELESS = auto()  # Pure function of its inputs
    STATEFUL = auto()  # Threads an opaque state slot through its body
    GRAPH = auto()  # Wraps a whole nested graph


@dataclass(frozen=True, slots=True)
class Port:
    """A named input or output of a node.

    The type hint is informational only; values are not checked at graph level.
    """

    name: str
    type_hint: str = "any"

    @classmethod
    def parse(cls, spec: str | Port) -> Port:
        """Parse ``"name"`` or ``"name:hint"`` into a Port."""
        if isinstance(spec, Port):
            return spec
        name, _, hint = spec.partition(":")
        return cls(name=name.strip(), type_hint=hint.strip() or "any")

    def __str__(self) -> str:
        """Return the compact ``name[:hint]`` form used in persisted documents."""
        return self.name if self.type_hint == "any" else f"{self.name}:{self.type_hint}"


@dataclass(frozen=True, slots=True)
class PortSignature:
    """Ordered input and output port specs of a node."""

    inputs: tuple[str, ...]
    outputs: tuple[str, ...]

    def __str__(self) -> str:
        """Format as ``(a, b) -> (out)``."""
        return f"({', '.join(self.inputs)}) -> ({', '.join(self.outputs)})"


@dataclass(frozen=True, slots=True)
class Initializer:
    """Produces the first value of a state slot.

    Either a literal ``value`` (emitted as source, so every slot starts from a
    fresh copy) or a ``ref`` to an importable zero-argument callable in
    ``module:attr`` form.
    """

    value: Any = None
    ref: str | None = None

    def describe(self) -> str:
        """Human readable description, e.g. ``literal:0`` or ``pkg.mod:make``."""
        return self.ref if self.ref is not None else f"literal:{self.value!r}"


@dataclass(frozen=True, slots=True)
class ExprBody:
    """A Python expression where ``$name`` refers to input port ``name``."""

    src: str

    @property
    def vars(self) -> tuple[str, ...]:
        """Unique ``$`` variable names in order of first appearance."""
        return expr_vars(self.src)


@dataclass(frozen=True, slots=True)
class FnBody:
    """A reference to an importable function (``module:attr``)."""

    ref: str
    func: Callable[..., Any] | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class GraphBody:
    """A nested graph whose exposed ports become the node's ports."""

    graph: Graph = field(compare=False)


@dataclass(frozen=True, slots=True)
class FunctionBody:
    """Outputs the wrapped node's body as a callable instead of running it."""

    node: Node = field(compare=False)


@dataclass(frozen=True, slots=True)
class DelayBody:
    """One-step delay: outputs the stored value, stores the input at cycle end."""


Body: TypeAlias = ExprBody | FnBody | GraphBody | DelayBody | FunctionBody


def expr_vars(src: str) -> tuple[str, ...]:
    """Return the unique ``$`` variables of an expression in order of first appearance.

    Example:
        >>> expr_vars("$a + $b * $a")
        ('a', 'b')

    """
    seen: dict[str, None] = {}
    for match in VAR_PATTERN.finditer(src):
        seen.setdefault(match.group(1), None)
    return tuple(seen)


def resolve_ref(ref: str) -> Any:
    """Import the object referred to by ``module:attr`` (``attr`` may be dotted).

    Raises:
        UnsupportedBody: If the reference is malformed or cannot be imported.

    """
    if ":" not in ref:
        msg = f"reference '{ref}' must be in format 'module.path:attribute'"
        raise UnsupportedBody(None, msg)
    module_name, attr_path = ref.split(":", 1)
    try:
        obj: Any = importlib.import_module(module_name)
        for attr in attr_path.split("."):
            obj = getattr(obj, attr)
    except (ImportError, AttributeError) as e:
        msg = f"cannot import '{ref}': {e}"
        raise UnsupportedBody(None, msg) from e
    return obj


def callable_ref(func: Callable[..., Any]) -> str:
    """Return the ``module:qualname`` reference of a callable."""
    return f"{func.__module__}:{func.__qualname__}"


def _positional_arity(func: Callable[..., Any]) -> tuple[int, int | None] | None:
    """Return (required, maximum) positional arity, or None when it cannot be inspected."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return None
    required = 0
    maximum: int | None = 0
    for param in sig.parameters.values():
        if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            if maximum is not None:
                maximum += 1
            if param.default is inspect.Parameter.empty:
                required += 1
        elif param.kind is inspect.Parameter.VAR_POSITIONAL:
            maximum = None
        elif param.kind is inspect.Parameter.KEYWORD_ONLY and param.default is inspect.Parameter.empty:
            return (required, -1)  # cannot be called positionally at all
    return (required, maximum)


def _ports(specs: Iterable[str | Port]) -> tuple[Port, ...]:
    return tuple(Port.parse(spec) for spec in specs)


def _check_port_names(ports: tuple[Port, ...], side: str) -> None:
    names = [port.name for port in ports]
    for name in names:
        if not name.isidentifier():
            msg = f"{side} port name '{name}' is not a valid identifier"
            raise SignatureMismatch(msg)
    if len(set(names)) != len(names):
        msg = f"duplicate {side} port names in {names}"
        raise SignatureMismatch(msg)


@dataclass(frozen=True, slots=True, eq=False)
class Node:
    """An immutable node definition.

    The owning graph assigns the stable id; the same Node value may be added to
    several graphs. Changing ports means building a new Node and replacing the
    instance in the graph.

    Attributes:
        kind: STATELESS, STATEFUL or GRAPH.
        inputs: Ordered input ports.
        outputs: Ordered output ports.
        body: Expression, function reference, nested graph, delay or function
            value.
        entrypoint: Whether the node originates push events.
        branches: For output branching, the output indices firing for each
            branch. The body then returns the chosen branch index first.
        initializer: Initial state for STATEFUL nodes.
        is_delay: Whether the node is a one-step delay breaking a cycle.
        tag: Registry tag used to persist and rebuild the node.
        params: Parameters that rebuild the node through its registry tag.

    """

    kind: NodeKind
    inputs: tuple[Port, ...]
    outputs: tuple[Port, ...]
    body: Body
    entrypoint: bool = False
    branches: tuple[tuple[int, ...], ...] | None = None
    initializer: Initializer | None = None
    is_delay: bool = False
    tag: str = "expr"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:  # noqa: C901, PLR0912
        """Validate that ports, body and flags agree."""
        _check_port_names(self.inputs, "input")
        _check_port_names(self.outputs, "output")

        if (self.kind is NodeKind.STATEFUL) != (self.initializer is not None):
            msg = f"{self.kind} node must {'' if self.kind is NodeKind.STATEFUL else 'not '}declare an initializer"
            raise SignatureMismatch(msg)

        if self.branches is not None:
            if not self.branches:
                msg = "a branching node needs at least one branch"
                raise SignatureMismatch(msg)
            for branch in self.branches:
                for index in branch:
                    if not 0 <= index < len(self.outputs):
                        msg = f"branch output index {index} out of range for {len(self.outputs)} outputs"
                        raise SignatureMismatch(msg)

        match self.body:
            case ExprBody(src):
                missing = [name for name in expr_vars(src) if name not in {p.name for p in self.inputs}]
                if missing:
                    msg = f"expression refers to undeclared inputs {missing}"
                    raise SignatureMismatch(msg)
            case FnBody(ref, func):
                if func is not None:
                    self._check_fn_arity(ref, func)
            case GraphBody(graph):
                if self.kind is not NodeKind.GRAPH or self.entrypoint or self.branches is not None:
                    msg = "a nested graph node cannot be stateful, branching or an entrypoint"
                    raise SignatureMismatch(msg)
                exposed = PortSignature(tuple(graph.exposed_inputs), tuple(graph.exposed_outputs))
                if self.port_names() != exposed:
                    msg = f"nested graph exposes {exposed}, node declares {self.port_names()}"
                    raise SignatureMismatch(msg)
            case DelayBody():
                if not self.is_delay:
                    msg = "a delay body requires the delay flag"
                    raise SignatureMismatch(msg)
            case FunctionBody(inner):
                wrappable = (
                    isinstance(inner.body, ExprBody | FnBody)
                    and not inner.stateful
                    and not inner.branching
                    and not inner.entrypoint
                    and len(inner.outputs) == 1
                )
                if not wrappable:
                    msg = (
                        "only stateless, non-branching expression or function nodes "
                        "with one output can be used as functions"
                    )
                    raise SignatureMismatch(msg)
                if self.stateful or self.branching or self.entrypoint:
                    msg = "a function value node cannot be stateful, branching or an entrypoint"
                    raise SignatureMismatch(msg)

        if self.kind is NodeKind.GRAPH and not isinstance(self.body, GraphBody):
            msg = "a GRAPH node needs a nested graph body"
            raise SignatureMismatch(msg)

        if self.is_delay:
            valid = (
                isinstance(self.body, DelayBody)
                and self.kind is NodeKind.STATEFUL
                and len(self.inputs) == 1
                and len(self.outputs) == 1
                and self.branches is None
                and not self.entrypoint
            )
            if not valid:
                msg = "a delay node is stateful with exactly one input and one output"
                raise SignatureMismatch(msg)

    def _check_fn_arity(self, ref: str, func: Callable[..., Any]) -> None:
        arity = _positional_arity(func)
        if arity is None:
            logger.debug("Cannot inspect signature of %s, skipping arity check", ref)
            return
        required, maximum = arity
        expected = len(self.inputs) + (1 if self.stateful else 0)
        if maximum == -1 or expected < required or (maximum is not None and expected > maximum):
            msg = f"function '{ref}' cannot be called with {expected} positional arguments"
            raise SignatureMismatch(msg)

    # -- Queries ---------------------------------------------------------------

    @property
    def stateful(self) -> bool:
        """Whether the node owns a state slot."""
        return self.kind is NodeKind.STATEFUL

    @property
    def branching(self) -> bool:
        """Whether the node chooses which outputs fire."""
        return self.branches is not None

    @property
    def signature(self) -> PortSignature:
        """Ordered port specs including type hints."""
        return PortSignature(
            inputs=tuple(str(port) for port in self.inputs),
            outputs=tuple(str(port) for port in self.outputs),
        )

    def port_names(self) -> PortSignature:
        """Ordered port names without type hints."""
        return PortSignature(
            inputs=tuple(port.name for port in self.inputs),
            outputs=tuple(port.name for port in self.outputs),
        )

    def input_index(self, name: str) -> int:
        """Index of the input port called ``name``."""
        for index, port in enumerate(self.inputs):
            if port.name == name:
                return index
        msg = f"no input port named '{name}'"
        raise KeyError(msg)

    def output_index(self, name: str) -> int:
        """Index of the output port called ``name``."""
        for index, port in enumerate(self.outputs):
            if port.name == name:
                return index
        msg = f"no output port named '{name}'"
        raise KeyError(msg)

    def with_initializer(self, initializer: Initializer) -> Node:
        """Return a copy using a different state initializer."""
        if not self.stateful:
            msg = "only stateful nodes have an initializer"
            raise SignatureMismatch(msg)
        return replace(self, initializer=initializer)

    # -- Constructors ----------------------------------------------------------

    @classmethod
    def expr(  # noqa: PLR0913
        cls,
        src: str,
        inputs: Iterable[str | Port] | None = None,
        outputs: Iterable[str | Port] = ("out",),
        *,
        entrypoint: bool = False,
        branches: Iterable[Iterable[int]] | None = None,
        state: Any = MISSING,
        state_ref: str | None = None,
    ) -> Node:
        """Build a node from a Python expression.

        ``$name`` refers to the input port ``name``; without explicit inputs the
        ports are the ``$`` variables in order of first appearance. Stateful
        nodes (``state`` or ``state_ref`` given) see their slot as ``state`` and
        evaluate to ``(outputs..., new_state)``. Branching nodes evaluate to
        ``(branch_index, outputs...)``.

        Example:
            >>> Node.expr("$a + $b").port_names()
            PortSignature(inputs=('a', 'b'), outputs=('out',))

        """
        in_ports = _ports(inputs) if inputs is not None else _ports(expr_vars(src))
        out_ports = _ports(outputs)
        branch_table = tuple(tuple(branch) for branch in branches) if branches is not None else None
        initializer = _make_initializer(state, state_ref)
        return cls(
            kind=NodeKind.STATEFUL if initializer is not None else NodeKind.STATELESS,
            inputs=in_ports,
            outputs=out_ports,
            body=ExprBody(src),
            entrypoint=entrypoint,
            branches=branch_table,
            initializer=initializer,
            tag="expr",
            params={
                "src": src,
                "inputs": [str(port) for port in in_ports],
                "outputs": [str(port) for port in out_ports],
                "entrypoint": entrypoint,
                "branches": [list(branch) for branch in branch_table] if branch_table is not None else None,
                "stateful": initializer is not None,
            },
        )

    @classmethod
    def fn(  # noqa: PLR0913
        cls,
        func: str | Callable[..., Any],
        inputs: Iterable[str | Port],
        outputs: Iterable[str | Port] = ("out",),
        *,
        entrypoint: bool = False,
        branches: Iterable[Iterable[int]] | None = None,
        state: Any = MISSING,
        state_ref: str | None = None,
    ) -> Node:
        """Build a node calling an importable function with its inputs positionally.

        The return convention matches :meth:`expr`; a stateful function receives
        the state as its last argument.
        """
        if isinstance(func, str):
            ref = func
            resolved = resolve_ref(ref)
            if not callable(resolved):
                msg = f"'{ref}' is not callable"
                raise UnsupportedBody(None, msg)
        else:
            ref = callable_ref(func)
            resolved = func
        in_ports = _ports(inputs)
        out_ports = _ports(outputs)
        branch_table = tuple(tuple(branch) for branch in branches) if branches is not None else None
        initializer = _make_initializer(state, state_ref)
        return cls(
            kind=NodeKind.STATEFUL if initializer is not None else NodeKind.STATELESS,
            inputs=in_ports,
            outputs=out_ports,
            body=FnBody(ref=ref, func=resolved),
            entrypoint=entrypoint,
            branches=branch_table,
            initializer=initializer,
            tag="fn",
            params={
                "ref": ref,
                "inputs": [str(port) for port in in_ports],
                "outputs": [str(port) for port in out_ports],
                "entrypoint": entrypoint,
                "branches": [list(branch) for branch in branch_table] if branch_table is not None else None,
                "stateful": initializer is not None,
            },
        )

    @classmethod
    def graph(cls, graph: Graph) -> Node:
        """Wrap a graph; its exposed inputs and outputs become the node's ports."""
        return cls(
            kind=NodeKind.GRAPH,
            inputs=_ports(graph.exposed_inputs),
            outputs=_ports(graph.exposed_outputs),
            body=GraphBody(graph),
            tag="graph",
        )

    @classmethod
    def function(cls, node: Node) -> Node:
        """Wrap a node as a function value.

        Whenever the new node runs, its ``fn`` output fires a callable taking
        the wrapped node's inputs positionally and returning its output. The
        ``bang`` input only triggers it.

        Example:
            >>> Node.function(Node.expr("$a * $b")).port_names()
            PortSignature(inputs=('bang',), outputs=('fn',))

        """
        return cls(
            kind=NodeKind.STATELESS,
            inputs=(Port("bang"),),
            outputs=(Port("fn"),),
            body=FunctionBody(node),
            tag="function",
            params={"node": {"tag": node.tag, "params": {k: v for k, v in node.params.items() if v is not None}}},
        )

    @classmethod
    def apply(cls) -> Node:
        """Call the function arriving at ``fn`` with the argument list arriving at ``args``.

        Missing arguments mean an empty list; a missing function gives None.
        """
        node = cls.expr("None if $fn is None else $fn(*($args or ()))", inputs=["fn", "args"])
        return replace(node, tag="apply", params={})

    @classmethod
    def delay(cls, initial: Any = None, *, initial_ref: str | None = None) -> Node:
        """Build a one-step delay.

        Within a cycle the node outputs its stored value; once the cycle has run,
        the value that arrived at its input is stored for the next cycle. Edges
        into a delay do not count as dependencies, so it may close a loop.
        """
        return cls(
            kind=NodeKind.STATEFUL,
            inputs=(Port("in"),),
            outputs=(Port("out"),),
            body=DelayBody(),
            initializer=_make_initializer(initial, initial_ref) or Initializer(value=None),
            is_delay=True,
            tag="delay",
        )

    @classmethod
    def entry(cls, outputs: Iterable[str | Port] = ("out",)) -> Node:
        """Build an entrypoint forwarding the values pushed into it."""
        out_ports = _ports(outputs)
        names = [f"${port.name}" for port in out_ports]
        if len(names) == 1:
            src = names[0]
        else:
            src = f"({', '.join(names)})" if names else "None"
        node = cls.expr(src, inputs=out_ports, outputs=out_ports, entrypoint=True)
        return replace(node, tag="entry", params={"outputs": [str(port) for port in out_ports]})


def _make_initializer(state: Any, state_ref: str | None) -> Initializer | None:
    if state_ref is not None:
        return Initializer(ref=state_ref)
    if state is MISSING:
        return None
    return Initializer(value=state)
