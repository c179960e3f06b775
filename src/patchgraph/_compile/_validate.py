"""Checks that node bodies only use what the runtime provides."""

from __future__ import annotations

import ast
import inspect
import logging
from typing import TYPE_CHECKING

from .._errors import UnsupportedBody
from .._node import VAR_PATTERN, resolve_ref

if TYPE_CHECKING:
    from collections.abc import Collection

    from .._node import NodePath
    from .._runtime import Runtime

logger = logging.getLogger(__name__)

_FORBIDDEN_NODES: dict[type[ast.AST], str] = {
    ast.Await: "await",
    ast.Yield: "yield",
    ast.YieldFrom: "yield from",
    ast.NamedExpr: "assignment expressions",
}


def input_param(name: str) -> str:
    """Name of the parameter carrying input port ``name`` in generated code."""
    return f"in_{name}"


def rewrite_expr(src: str) -> str:
    """Replace ``$name`` placeholders by their parameter names."""
    return VAR_PATTERN.sub(lambda m: input_param(m.group(1)), src)


def _locally_bound(tree: ast.AST) -> set[str]:
    """Names bound by lambdas and comprehensions inside the expression."""
    bound: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Lambda):
            args = node.args
            for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs]:
                bound.add(arg.arg)
            if args.vararg is not None:
                bound.add(args.vararg.arg)
            if args.kwarg is not None:
                bound.add(args.kwarg.arg)
        elif isinstance(node, ast.comprehension):
            for target in ast.walk(node.target):
                if isinstance(target, ast.Name):
                    bound.add(target.id)
    return bound


def check_expr(
    path: NodePath,
    src: str,
    inputs: Collection[str],
    runtime: Runtime,
    *,
    stateful: bool,
) -> ast.Expression:
    """Parse an expression body and check every name it uses.

    Args:
        path: Node path, for error reporting.
        src: The expression with ``$`` placeholders.
        inputs: Declared input port names.
        runtime: Runtime whose primitives are available.
        stateful: Whether ``state`` is available.

    Returns:
        The parsed expression after placeholder substitution.

    Raises:
        UnsupportedBody: If the expression is invalid or uses anything outside
            the runtime's primitives, its inputs and its state.

    """
    code = rewrite_expr(src)
    try:
        tree = ast.parse(code, mode="eval")
    except SyntaxError as e:
        msg = f"invalid expression {src!r}: {e.msg}"
        raise UnsupportedBody(path, msg) from e

    allowed = {input_param(name) for name in inputs} | _locally_bound(tree)
    if stateful:
        allowed.add("state")

    for node in ast.walk(tree):
        for forbidden, what in _FORBIDDEN_NODES.items():
            if isinstance(node, forbidden):
                msg = f"{what} is not supported in expressions"
                raise UnsupportedBody(path, msg)
        if isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            msg = f"access to dunder attribute '{node.attr}' is not supported"
            raise UnsupportedBody(path, msg)
        if isinstance(node, ast.Name) and node.id not in allowed and not runtime.is_primitive(node.id):
            msg = f"name '{node.id}' is neither an input nor a runtime primitive"
            raise UnsupportedBody(path, msg)
    return tree


def check_fn_ref(path: NodePath, ref: str) -> None:
    """Check that a function reference can be imported by the generated module.

    Raises:
        UnsupportedBody: If the reference does not resolve to a module-level callable.

    """
    try:
        func = resolve_ref(ref)
    except UnsupportedBody as e:
        raise UnsupportedBody(path, e.reason) from e
    if not callable(func):
        msg = f"'{ref}' is not callable"
        raise UnsupportedBody(path, msg)
    module_name, attr_path = ref.split(":", 1)
    if "<" in attr_path or module_name == "__main__":
        msg = f"'{ref}' is not importable by name"
        raise UnsupportedBody(path, msg)
    if inspect.iscoroutinefunction(func):
        msg = f"'{ref}' is a coroutine function"
        raise UnsupportedBody(path, msg)
