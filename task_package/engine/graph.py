"""Deployed operator graphs and their per-graph task context."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterator
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from task_package.models.task_package import ActiveTask, FlowMessage, utc_now

if TYPE_CHECKING:
    from task_package.engine.operators.base import Operator
    from task_package.runtime import TaskPackageRuntime

logger = logging.getLogger(__name__)


class NodeSpec(BaseModel):
    """One operator in a graph description.

    ``wires[port]`` lists the ids of the operators that receive messages
    sent on that output port.
    """

    id: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    wires: list[list[str]] = Field(default_factory=list)


class GraphSpec(BaseModel):
    id: str
    nodes: list[NodeSpec]


class GraphContext:
    """Ordered set of active-task descriptors owned by one graph.

    Entry operators register descriptors, the cancellation router and the
    guarded operators read the cancelled flag, and exit operators remove
    them. Descriptors are unique by instance id.
    """

    def __init__(self, graph_id: str) -> None:
        self.graph_id = graph_id
        self.values: dict[str, Any] = {}
        self._tasks: dict[str, ActiveTask] = {}

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def register(self, task: ActiveTask) -> bool:
        """Add a descriptor. Returns False if the instance is already registered."""
        if task.instance_id in self._tasks:
            return False
        self._tasks[task.instance_id] = task
        return True

    def get(self, instance_id: str) -> ActiveTask | None:
        return self._tasks.get(instance_id)

    def remove(self, instance_id: str) -> ActiveTask | None:
        return self._tasks.pop(instance_id, None)

    def mark_cancelled(self, instance_id: str) -> ActiveTask | None:
        task = self._tasks.get(instance_id)
        if task is not None and not task.cancelled:
            task.cancelled = True
            task.cancelled_at = utc_now()
        return task

    def clear_cancelled(self, instance_id: str) -> None:
        task = self._tasks.get(instance_id)
        if task is not None:
            task.cancelled = False
            task.cancelled_at = None

    def is_cancelled(self, instance_id: str) -> bool:
        task = self._tasks.get(instance_id)
        return task is not None and task.cancelled

    def active_tasks(self, definition_id: str | None = None) -> list[ActiveTask]:
        return [
            task
            for task in self._tasks.values()
            if definition_id is None or task.definition_id == definition_id
        ]


class GraphDirectory:
    """All graphs currently deployed in a runtime."""

    def __init__(self) -> None:
        self._graphs: dict[str, Graph] = {}

    def __iter__(self) -> Iterator[Graph]:
        return iter(list(self._graphs.values()))

    def __len__(self) -> int:
        return len(self._graphs)

    def add(self, graph: Graph) -> None:
        if graph.graph_id in self._graphs:
            raise ValueError(f"Graph {graph.graph_id} is already deployed")
        self._graphs[graph.graph_id] = graph

    def get(self, graph_id: str) -> Graph | None:
        return self._graphs.get(graph_id)

    def remove(self, graph_id: str) -> Graph | None:
        return self._graphs.pop(graph_id, None)

    def find(self, instance_id: str) -> GraphContext | None:
        """Context holding a descriptor for ``instance_id``, if any."""
        for graph in self._graphs.values():
            if instance_id in graph.context:
                return graph.context
        return None

    def holds(self, instance_id: str) -> bool:
        return self.find(instance_id) is not None


class Graph:
    """A deployed set of wired operators sharing one context."""

    def __init__(self, graph_id: str, runtime: TaskPackageRuntime) -> None:
        self.graph_id = graph_id
        self.runtime = runtime
        self.context = GraphContext(graph_id)
        self.operators: dict[str, Operator] = {}
        self._wires: dict[tuple[str, int], list[str]] = {}
        self._deliveries: set[asyncio.Task] = set()
        self.deployed = False

    def add(self, operator: Operator) -> Operator:
        if operator.operator_id in self.operators:
            raise ValueError(f"Duplicate operator id {operator.operator_id} in graph {self.graph_id}")
        operator.bind(self)
        self.operators[operator.operator_id] = operator
        return operator

    def connect(self, source_id: str, target_id: str, port: int = 0) -> None:
        for operator_id in (source_id, target_id):
            if operator_id not in self.operators:
                raise ValueError(f"Unknown operator {operator_id} in graph {self.graph_id}")
        source = self.operators[source_id]
        if port >= source.outputs:
            raise ValueError(f"Operator {source_id} has no output port {port}")
        self._wires.setdefault((source_id, port), []).append(target_id)

    def deliver(self, source_id: str, port: int, message: FlowMessage) -> int:
        """Hand a message to every operator wired to ``source_id``'s port."""
        targets = self._wires.get((source_id, port), [])
        for target_id in targets:
            self.spawn(self.operators[target_id].receive(message))
        return len(targets)

    def refresh_watchers(self) -> None:
        """Let watching operators pick up descriptor changes without waiting for a poll."""
        for operator in self.operators.values():
            operator.on_descriptors_changed()

    def spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return task

    async def deploy(self) -> None:
        for operator in self.operators.values():
            await operator.start()
        self.deployed = True
        logger.info(f"Deployed graph {self.graph_id} with {len(self.operators)} operator(s)")

    async def wait_idle(self) -> None:
        """Wait until no message or bus listener is in flight."""
        while True:
            await self.runtime.bus.drain()
            if not self._deliveries:
                break
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        await self.runtime.bus.drain()

    async def close(self) -> None:
        for operator in self.operators.values():
            try:
                await operator.close()
            except Exception as e:
                logger.exception(f"Error closing operator {operator.operator_id}: {e}")

        for task in list(self._deliveries):
            task.cancel()
        await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        self.deployed = False
        logger.info(f"Closed graph {self.graph_id}")
