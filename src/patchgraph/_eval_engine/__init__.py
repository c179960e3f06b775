"""Evaluation engine module for patchgraph.

This module runs compiled units. A coordinator owns one loaded unit and a
state store, and serves push events and pull requests as evaluation cycles.

Key types:
- EvaluationCoordinator: Lifecycle and cycle scheduling for one graph
- CycleResult: Values, evaluated nodes and fired outputs of a cycle
- CycleContext: Per-cycle bookkeeping handed to generated step functions
"""

from ._coordinator import CoordinatorState, CycleResult, EvaluationCoordinator, InputBindings, NodeRef, Request
from ._cycle import CycleContext

__all__ = [
    "CoordinatorState",
    "CycleContext",
    "CycleResult",
    "EvaluationCoordinator",
    "InputBindings",
    "NodeRef",
    "Request",
]
