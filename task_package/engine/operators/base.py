"""Base classes for graph operators."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ValidationError

from task_package.engine.paths import get_path
from task_package.models.task_package import FlowMessage, WorkflowContext

if TYPE_CHECKING:
    from task_package.engine.graph import Graph, GraphContext
    from task_package.runtime import TaskPackageRuntime
    from task_package.services.event_bus import Subscription

logger = logging.getLogger(__name__)

# Output ports of operators with a proceed/cancelled split
PROCEED = 0
CANCELLED = 1


class OperatorError(Exception):
    """Raised for invalid operator configuration."""

    def __init__(self, message: str, operator_type: str) -> None:
        super().__init__(message)
        self.operator_type = operator_type


class OperatorConfig(BaseModel):
    model_config = {"extra": "ignore"}


class Operator(ABC):
    """A node in a graph.

    Subclasses set ``type_name``, ``outputs`` and ``config_model`` and
    implement ``handle``. Operators with more than one output use the last
    port for cancellation and failure messages.
    """

    type_name: ClassVar[str] = ""
    outputs: ClassVar[int] = 1
    config_model: ClassVar[type[OperatorConfig]] = OperatorConfig

    def __init__(self, operator_id: str, config: dict[str, Any] | OperatorConfig | None = None) -> None:
        self.operator_id = operator_id
        try:
            if isinstance(config, OperatorConfig):
                self.config = config
            else:
                self.config = self.config_model.model_validate(config or {})
        except ValidationError as e:
            raise OperatorError(f"Invalid config for {operator_id}: {e}", self.type_name) from e
        self.graph: Graph | None = None
        self.status = ""
        self._loops: list[asyncio.Task] = []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.operator_id}>"

    # =========================================================================
    # Wiring
    # =========================================================================

    def bind(self, graph: Graph) -> None:
        self.graph = graph

    @property
    def runtime(self) -> TaskPackageRuntime:
        if self.graph is None:
            raise RuntimeError(f"Operator {self.operator_id} is not part of a graph")
        return self.graph.runtime

    @property
    def context(self) -> GraphContext:
        if self.graph is None:
            raise RuntimeError(f"Operator {self.operator_id} is not part of a graph")
        return self.graph.context

    def emit(self, message: FlowMessage, port: int = 0) -> None:
        if self.graph is None:
            raise RuntimeError(f"Operator {self.operator_id} is not part of a graph")
        self.graph.deliver(self.operator_id, port, message)

    def set_status(self, text: str) -> None:
        self.status = text

    def on_descriptors_changed(self) -> None:
        """Called after the graph context gains or loses a descriptor."""

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Called once when the graph is deployed."""

    async def close(self) -> None:
        """Called when the graph is torn down."""
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

    def every(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        """Run ``tick`` every ``interval`` seconds until the operator closes."""

        async def loop() -> None:
            while True:
                try:
                    await tick()
                except Exception as e:
                    logger.exception(f"Periodic task of {self.operator_id} failed: {e}")
                await asyncio.sleep(interval)

        self._loops.append(asyncio.ensure_future(loop()))

    # =========================================================================
    # Messages
    # =========================================================================

    async def receive(self, message: FlowMessage) -> None:
        """Entry point for delivered messages; failures never escape the operator."""
        try:
            await self.handle(message)
        except Exception as e:
            logger.exception(f"Operator {self.operator_id} ({self.type_name}) failed: {e}")
            self.set_status(f"error: {e}")
            if self.outputs > 1:
                self.emit(message.as_cleanup("error").evolve(error=str(e)), self.outputs - 1)

    @abstractmethod
    async def handle(self, message: FlowMessage) -> None:
        raise NotImplementedError

    def require_context(self, message: FlowMessage) -> WorkflowContext | None:
        """The message's workflow context, or None after logging the violation."""
        if message.workflow_context is None:
            logger.error(f"Operator {self.operator_id}: no workflow_context in message")
            self.set_status("missing workflow_context")
            return None
        return message.workflow_context

    def is_cancelled(self, message: FlowMessage) -> bool:
        """True for a normal message whose instance has been flagged cancelled."""
        if message.is_cleanup or message.instance_id is None:
            return False
        return self.context.is_cancelled(message.instance_id)

    def field(self, message: FlowMessage, path: str) -> Any:
        return get_path(message, path)


class WatchingOperator(Operator):
    """Input-less operator that keeps one bus subscription per watched key.

    ``refresh`` reconciles subscriptions with ``watched_keys`` and runs on a
    sampling loop; call it directly to pick up new descriptors at once.
    """

    outputs: ClassVar[int] = 1
    refresh_interval: ClassVar[float] = 0.5

    def __init__(self, operator_id: str, config: dict[str, Any] | OperatorConfig | None = None) -> None:
        super().__init__(operator_id, config)
        self._subscriptions: dict[str, Subscription] = {}

    @abstractmethod
    def watched_keys(self) -> set[str]:
        raise NotImplementedError

    @abstractmethod
    def subscribe_key(self, key: str) -> Subscription:
        raise NotImplementedError

    async def start(self) -> None:
        await self.refresh()
        self.every(self.refresh_interval, self.refresh)

    async def refresh(self) -> None:
        self.reconcile()

    def on_descriptors_changed(self) -> None:
        self.reconcile()

    def reconcile(self) -> None:
        wanted = self.watched_keys()
        for key in set(self._subscriptions) - wanted:
            self.runtime.bus.unsubscribe(self._subscriptions.pop(key))
        for key in wanted - set(self._subscriptions):
            self._subscriptions[key] = self.subscribe_key(key)
        self.set_status(f"watching {len(self._subscriptions)}")

    async def close(self) -> None:
        await super().close()
        for subscription in self._subscriptions.values():
            self.runtime.bus.unsubscribe(subscription)
        self._subscriptions.clear()

    async def handle(self, message: FlowMessage) -> None:
        logger.debug(f"Operator {self.operator_id} has no input; dropping message")
