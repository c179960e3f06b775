"""Generate the Python source of a compiled unit.

Every node becomes a ``node_fn_<path>`` holding its body and a
``step_<path>(cx)`` wrapping it with gating, input gathering, state access and
output recording. Entrypoints get a ``push_<path>(cx)`` and pull targets a
``pull_<path>(cx)`` that call the steps of their static evaluation order.
The output only depends on the flat graph, so compiling the same graph twice
gives identical source.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .._errors import UnsupportedBody
from .._node import DelayBody, ExprBody, FnBody, FunctionBody
from ._schedule import eval_order
from ._validate import check_expr, check_fn_ref, input_param

if TYPE_CHECKING:
    from .._node import Node, NodePath
    from .._runtime import Runtime
    from ._flatten import FlatGraph

logger = logging.getLogger(__name__)

HEADER = "# Generated by patchgraph. Do not edit.\n"


def path_suffix(path: NodePath) -> str:
    """Symbol suffix of a node path, e.g. ``(3, 1)`` becomes ``3_1``."""
    return "_".join(str(part) for part in path)


def _literal(value: Any) -> str | None:
    """Source text evaluating to ``value``, or None if it has no literal form."""
    text = repr(value)
    try:
        same = ast.literal_eval(text) == value
    except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
        return None
    return text if same else None


def _tuple(names: list[str]) -> str:
    if len(names) == 1:
        return f"({names[0]},)"
    return f"({', '.join(names)})"


def _call_target(ref: str) -> tuple[str, str]:
    """Return (module to import, expression naming the callable)."""
    module_name, attr_path = ref.split(":", 1)
    return module_name, f"{module_name}.{attr_path}"


@dataclass(slots=True)
class EmittedSource:
    """Generated source plus the symbols it defines."""

    source: str
    steps: dict[NodePath, str]
    entrypoints: dict[NodePath, str]
    pulls: dict[NodePath, str]


@dataclass(slots=True)
class _Emitter:
    flat: FlatGraph
    runtime: Runtime
    imports: set[str] = field(default_factory=set)
    constants: list[str] = field(default_factory=list)
    blocks: list[list[str]] = field(default_factory=list)

    def node(self, path: NodePath, node: Node) -> str:
        """Emit the functions of one node; return its step symbol."""
        suffix = path_suffix(path)
        if node.initializer is not None:
            self.blocks.append(self._init(path, node))
        if not isinstance(node.body, DelayBody):
            self.blocks.append(self._body(path, node))
        if node.branches is not None:
            self.constants.append(f"BRANCHES_{suffix} = {node.branches!r}")
        self.blocks.append(self._step(path, node))
        return f"step_{suffix}"

    def _init(self, path: NodePath, node: Node) -> list[str]:
        assert node.initializer is not None  # noqa: S101
        lines = [f"def init_{path_suffix(path)}():"]
        if node.initializer.ref is not None:
            check_fn_ref(path, node.initializer.ref)
            module_name, target = _call_target(node.initializer.ref)
            self.imports.add(module_name)
            lines.append(f"    return {target}()")
            return lines
        text = _literal(node.initializer.value)
        if text is None:
            msg = f"initial state {node.initializer.value!r} has no literal form; use an initializer reference"
            raise UnsupportedBody(path, msg)
        lines.append(f"    return {text}")
        return lines

    def _body(self, path: NodePath, node: Node) -> list[str]:
        params = [input_param(port.name) for port in node.inputs]
        if node.stateful:
            params.append("state")
        lines = [f"def node_fn_{path_suffix(path)}({', '.join(params)}):"]
        if isinstance(node.body, FunctionBody):
            inner = node.body.node
            name = f"function_{path_suffix(path)}"
            inner_params = [input_param(port.name) for port in inner.inputs]
            lines += [
                f"    def {name}({', '.join(inner_params)}):",
                f"        {self._return(path, inner, inner_params)}",
                f"    return {name}",
            ]
        else:
            lines.append(f"    {self._return(path, node, params)}")
        return lines

    def _return(self, path: NodePath, node: Node, params: list[str]) -> str:
        """The return statement computing an expression or function body."""
        match node.body:
            case ExprBody(src):
                tree = check_expr(
                    path,
                    src,
                    [port.name for port in node.inputs],
                    self.runtime,
                    stateful=node.stateful,
                )
                return f"return {ast.unparse(tree.body)}"
            case FnBody(ref):
                check_fn_ref(path, ref)
                module_name, target = _call_target(ref)
                self.imports.add(module_name)
                return f"return {target}({', '.join(params)})"
        msg = f"cannot lower body {type(node.body).__name__}"
        raise UnsupportedBody(path, msg)

    def _step(self, path: NodePath, node: Node) -> list[str]:
        suffix = path_suffix(path)
        p = repr(path)
        incoming = self.flat.incoming(path)
        lines = [f"def step_{suffix}(cx):"]

        if node.is_delay:
            lines += [
                f"    if not cx.admit({p}, None):",
                "        return",
                f"    state = cx.state.get_or_init({p}, init_{suffix})",
                f"    cx.fire({p}, (state,))",
                f"    cx.defer_store({p}, 0, {incoming.get(0)!r})",
            ]
            return lines

        sources = tuple(sorted(set(incoming.values())))
        lines += [f"    if not cx.admit({p}, {sources!r}):", "        return"]
        args: list[str] = []
        for index, port in enumerate(node.inputs):
            name = input_param(port.name)
            lines.append(f"    {name} = cx.arg({p}, {index}, {incoming.get(index)!r})")
            args.append(name)
        if node.stateful:
            lines.append(f"    state = cx.state.get_or_init({p}, init_{suffix})")
            args.append("state")

        outs = [f"o{index}" for index in range(len(node.outputs))]
        targets = (["branch"] if node.branching else []) + outs + (["state"] if node.stateful else [])
        call = f"node_fn_{suffix}({', '.join(args)})"
        if not targets:
            lines.append(f"    {call}")
        elif len(targets) == 1 and (node.stateful or node.branching):
            # The body still returns a tuple, e.g. ``(new_state,)``.
            lines.append(f"    {_tuple(targets)} = {call}")
        else:
            lines.append(f"    {', '.join(targets)} = {call}")
        if node.stateful:
            lines.append(f"    cx.state.set({p}, state)")
        values = _tuple(outs) if outs else "()"
        if node.branching:
            lines.append(f"    cx.fire({p}, {values}, BRANCHES_{suffix}[branch])")
        else:
            lines.append(f"    cx.fire({p}, {values})")
        return lines

    def runner(self, prefix: str, path: NodePath, order: list[NodePath], steps: dict[NodePath, str]) -> str:
        """Emit a function running the given steps in order; return its symbol."""
        symbol = f"{prefix}_{path_suffix(path)}"
        self.blocks.append([f"def {symbol}(cx):", *(f"    {steps[step]}(cx)" for step in order)])
        return symbol


def pull_targets(flat: FlatGraph) -> list[NodePath]:
    """Nodes getting a dedicated pull function: exposed outputs and non-entrypoint sinks."""
    targets = {path for path, _ in flat.outputs.values()}
    sources = {edge.source for edge in flat.edges}
    targets |= {path for path, node in flat.nodes.items() if path not in sources and not node.entrypoint}
    return sorted(targets)


def emit_source(graph_id: str, flat: FlatGraph, runtime: Runtime) -> EmittedSource:
    """Generate the unit's module source.

    Raises:
        UnsupportedBody: If a node body cannot be expressed with the runtime's primitives.

    """
    emitter = _Emitter(flat=flat, runtime=runtime)
    steps = {path: emitter.node(path, node) for path, node in flat.nodes.items()}

    entrypoints: dict[NodePath, str] = {}
    for path in flat.entrypoints():
        entrypoints[path] = emitter.runner("push", path, eval_order(flat, push=[path]), steps)
    pulls: dict[NodePath, str] = {}
    for path in pull_targets(flat):
        pulls[path] = emitter.runner("pull", path, eval_order(flat, pull=[path]), steps)

    exported = sorted([*entrypoints.values(), *pulls.values()])
    parts = [HEADER + f"# graph: {graph_id}\n"]
    if emitter.imports:
        parts.append("\n".join(f"import {module}" for module in sorted(emitter.imports)) + "\n")
    parts.append("__all__ = [" + ", ".join(repr(name) for name in exported) + "]\n")
    if emitter.constants:
        parts.append("\n".join(emitter.constants) + "\n")
    parts.extend("\n".join(block) + "\n" for block in emitter.blocks)
    source = "\n\n".join(parts)

    logger.debug("Emitted %d lines for graph %s", source.count("\n"), graph_id)
    return EmittedSource(source=source, steps=steps, entrypoints=entrypoints, pulls=pulls)
