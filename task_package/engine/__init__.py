"""Graph engine: contexts, wiring and operator registry."""

from task_package.engine.graph import Graph, GraphContext, GraphDirectory, GraphSpec, NodeSpec
from task_package.engine.registry import OperatorRegistry, register_builtin_operators

__all__ = [
    "Graph",
    "GraphContext",
    "GraphDirectory",
    "GraphSpec",
    "NodeSpec",
    "OperatorRegistry",
    "register_builtin_operators",
]
