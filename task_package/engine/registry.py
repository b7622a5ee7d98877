"""Operator type registry and graph construction."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from task_package.engine.graph import Graph, GraphSpec
from task_package.engine.operators.base import Operator, OperatorConfig, OperatorError

if TYPE_CHECKING:
    from task_package.runtime import TaskPackageRuntime

logger = logging.getLogger(__name__)


class OperatorRegistry:
    """Registry of operator types available to graph specs.

    Can be used as a decorator:
        @registry.register
        class MyOperator(Operator):
            type_name = "my-operator"
    """

    def __init__(self) -> None:
        self._types: dict[str, type[Operator]] = {}

    def register(self, operator_class: type[Operator]) -> type[Operator]:
        name = operator_class.type_name
        if not name:
            raise ValueError(f"{operator_class.__name__} has no type_name")
        if name in self._types and self._types[name] is not operator_class:
            raise ValueError(f"Operator type {name!r} is already registered")
        self._types[name] = operator_class
        return operator_class

    def get(self, type_name: str) -> type[Operator] | None:
        return self._types.get(type_name)

    def types(self) -> list[str]:
        return sorted(self._types)

    def create(
        self,
        type_name: str,
        operator_id: str,
        config: dict[str, Any] | OperatorConfig | None = None,
    ) -> Operator:
        operator_class = self._types.get(type_name)
        if operator_class is None:
            raise OperatorError(f"Unknown operator type {type_name!r}", type_name)
        return operator_class(operator_id, config)

    def build(self, spec: GraphSpec, runtime: TaskPackageRuntime) -> Graph:
        """Instantiate and wire the operators described by ``spec``."""
        graph = Graph(spec.id, runtime)
        for node in spec.nodes:
            graph.add(self.create(node.type, node.id, node.config))
        for node in spec.nodes:
            for port, targets in enumerate(node.wires):
                for target in targets:
                    graph.connect(node.id, target, port)
        return graph


def register_builtin_operators(registry: OperatorRegistry) -> OperatorRegistry:
    """Register every operator shipped with the package."""
    from task_package.engine.operators import BUILTIN_OPERATORS

    for operator_class in BUILTIN_OPERATORS:
        registry.register(operator_class)
    logger.debug(f"Registered {len(BUILTIN_OPERATORS)} builtin operator type(s)")
    return registry
