"""Operators that react to cancellation of a running instance."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, ClassVar

from pydantic import Field

from task_package.engine.operators.base import (
    CANCELLED,
    PROCEED,
    Operator,
    OperatorConfig,
    WatchingOperator,
)
from task_package.models.task_package import FlowMessage, LifecycleStatus, utc_now
from task_package.services.event_bus import Subscription

logger = logging.getLogger(__name__)

CANCEL_REASON = "Task package was cancelled"


class CancelRouterConfig(OperatorConfig):
    definition_id: str | None = None


class CancelRouterOperator(WatchingOperator):
    """Emits one cleanup message per cancelled instance.

    Subscribes to the cancel event of every descriptor in its graph context
    (optionally only those of one definition) and injects a cleanup message
    into the cleanup path when the event fires.
    """

    type_name: ClassVar[str] = "cancel"
    config_model: ClassVar[type[OperatorConfig]] = CancelRouterConfig

    def __init__(self, operator_id: str, config: dict[str, Any] | OperatorConfig | None = None) -> None:
        super().__init__(operator_id, config)
        self._fired: set[str] = set()

    def watched_keys(self) -> set[str]:
        tasks = self.context.active_tasks(self.config.definition_id)
        live = {task.instance_id for task in tasks}
        self._fired &= live
        return live - self._fired

    def subscribe_key(self, key: str) -> Subscription:
        return self.runtime.bus.on_cancel(key, self._on_cancel)

    def _on_cancel(self, topic: str, event: dict[str, Any]) -> None:
        instance_id = event.get("instance_id")
        descriptor = self.context.get(instance_id) if instance_id else None
        if descriptor is None or instance_id in self._fired:
            return

        self._fired.add(instance_id)
        self.context.mark_cancelled(instance_id)
        logger.info(f"Routing cancellation of {instance_id} into cleanup path")

        message = FlowMessage(
            workflow_context=descriptor.to_context(LifecycleStatus.CANCELLING),
            payload=event.get("payload") or {},
            topic=f"task-package/{instance_id}/cancelled",
        ).as_cleanup("cancelled")
        self.emit(message)


class DelayConfig(OperatorConfig):
    delay_ms: int = Field(default=5000, ge=0)
    poll_interval_ms: int = Field(default=100, gt=0, le=100)


class GuardedDelayOperator(Operator):
    """Delays a message, diverting it to the cancelled output if its instance
    is cancelled while it waits. Cleanup messages are delayed and always
    proceed.
    """

    type_name: ClassVar[str] = "delay"
    outputs: ClassVar[int] = 2
    config_model: ClassVar[type[OperatorConfig]] = DelayConfig

    async def handle(self, message: FlowMessage) -> None:
        delay = self.config.delay_ms / 1000
        poll = self.config.poll_interval_ms / 1000

        if message.is_cleanup or message.instance_id is None:
            await asyncio.sleep(delay)
            self.emit(message, PROCEED)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            if self.is_cancelled(message):
                logger.debug(f"Delay for {message.instance_id} interrupted by cancellation")
                self.emit(message.as_cleanup("cancelled"), CANCELLED)
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll, remaining))

        self.emit(message, PROCEED)


class CancelCheckOperator(Operator):
    """Routes messages of cancelled instances to the cancelled output."""

    type_name: ClassVar[str] = "check-cancel"
    outputs: ClassVar[int] = 2

    async def handle(self, message: FlowMessage) -> None:
        if not self.is_cancelled(message):
            self.emit(message, PROCEED)
            return

        descriptor = self.context.get(message.instance_id)
        cancelled = message.evolve(
            cancelled=True,
            cancel_reason=CANCEL_REASON,
            cancelled_at=(descriptor.cancelled_at if descriptor else None) or utc_now(),
        ).as_cleanup("cancelled")
        logger.debug(f"Diverting message of cancelled instance {message.instance_id}")
        self.emit(cancelled, CANCELLED)
