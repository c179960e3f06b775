"""Context variables for patchgraph.

This module contains context variables used across the library.
It is kept separate to avoid circular imports.
"""

from __future__ import annotations

from contextvars import ContextVar, Token
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._registry import NodeRegistry

# Registry used to rebuild nested graph documents while a document is being loaded.
_registry_var: ContextVar[NodeRegistry | None] = ContextVar("node_registry", default=None)


def get_registry() -> NodeRegistry | None:
    """Get the registry of the document currently being loaded.

    Returns None outside of a load.
    """
    return _registry_var.get()


def set_registry(registry: NodeRegistry | None) -> Token[NodeRegistry | None]:
    """Set the registry in context.

    Returns a token that can be used to reset the value.
    """
    return _registry_var.set(registry)


def reset_registry(token: Token[NodeRegistry | None]) -> None:
    """Reset the registry using a token from set_registry."""
    _registry_var.reset(token)
