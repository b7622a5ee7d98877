"""Shared test helpers: a recording sink operator and graph builders."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar

from task_package.config import TaskPackageConfig
from task_package.engine.operators.base import Operator
from task_package.models import FlowMessage


def make_config(db_path: str, **overrides: Any) -> TaskPackageConfig:
    return TaskPackageConfig(database_path=db_path, **overrides)


class Collector(Operator):
    """Sink operator that records every message it receives."""

    type_name: ClassVar[str] = "collector"
    outputs: ClassVar[int] = 0

    def __init__(self, operator_id: str, config: Any = None) -> None:
        super().__init__(operator_id, config)
        self.messages: list[FlowMessage] = []

    async def handle(self, message: FlowMessage) -> None:
        self.messages.append(message)


async def wait_for(predicate: Callable[[], bool | Awaitable[bool]], timeout: float = 3.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(0.01)


def node(node_id: str, type_name: str, *wires: list[str], **config: Any) -> dict[str, Any]:
    return {"id": node_id, "type": type_name, "config": config, "wires": list(wires)}


def simple_graph(definition_id: str = "tp01", graph_id: str = "flow-1") -> dict[str, Any]:
    """start -> ongoing -> end"""
    return {
        "id": graph_id,
        "nodes": [
            node("start", "start", ["ongoing"], definition_id=definition_id, display_name="Test TP"),
            node("ongoing", "ongoing", ["end"]),
            node("end", "end"),
        ],
    }


def cancellable_graph(
    definition_id: str = "tp01",
    graph_id: str = "flow-1",
    delay_ms: int = 2000,
) -> dict[str, Any]:
    """start -> delay -> end, with the cancelled output and the router feeding a sink."""
    return {
        "id": graph_id,
        "nodes": [
            node("start", "start", ["delay"], definition_id=definition_id, display_name="Test TP"),
            node("delay", "delay", ["end"], ["end"], delay_ms=delay_ms),
            node("router", "cancel", ["cleanup"], definition_id=definition_id),
            node("cleanup", "collector"),
            node("end", "end"),
        ],
    }
