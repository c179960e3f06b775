"""Graph module providing the editable node graph and dependency abstractions.

This module contains:
- Graph: The mutable arena of nodes and port-level edges
- DependencyGraph[T]: A generic, immutable dependency graph over node keys
- topological_sort / find_cycle: Deterministic ordering and cycle detection
"""

from ._algorithms import find_cycle, topological_sort
from ._dependency_graph import DependencyGraph
from ._graph import Edge, Graph, GraphEvent, GraphEventKind, GraphListener

__all__ = [
    "DependencyGraph",
    "Edge",
    "Graph",
    "GraphEvent",
    "GraphEventKind",
    "GraphListener",
    "find_cycle",
    "topological_sort",
]
