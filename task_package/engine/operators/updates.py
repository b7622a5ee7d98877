"""Delivers external update events to running instances."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from task_package.engine.operators.base import OperatorConfig, WatchingOperator
from task_package.models.task_package import ActiveTask, FlowMessage
from task_package.services.event_bus import Subscription

logger = logging.getLogger(__name__)

_DEFINITION_KEY = "definition:"
_INSTANCE_KEY = "instance:"


class UpdateListenerConfig(OperatorConfig):
    definition_id: str | None = None


class UpdateListenerOperator(WatchingOperator):
    """Emits a message into the graph for each update addressed to one of its
    instances, or to a definition with instances in its graph.

    A definition-level update fans out to every active instance of that
    definition. Cancelled instances receive no updates.
    """

    type_name: ClassVar[str] = "update-listener"
    config_model: ClassVar[type[OperatorConfig]] = UpdateListenerConfig

    def _tasks(self) -> list[ActiveTask]:
        return [
            task
            for task in self.context.active_tasks(self.config.definition_id)
            if not task.cancelled
        ]

    def watched_keys(self) -> set[str]:
        keys = set()
        for task in self._tasks():
            keys.add(_INSTANCE_KEY + task.instance_id)
            keys.add(_DEFINITION_KEY + task.definition_id)
        if self.config.definition_id:
            keys.add(_DEFINITION_KEY + self.config.definition_id)
        return keys

    def subscribe_key(self, key: str) -> Subscription:
        if key.startswith(_DEFINITION_KEY):
            definition_id = key[len(_DEFINITION_KEY):]
            return self.runtime.bus.on_update(
                definition_id,
                lambda topic, event: self._on_definition_update(definition_id, event),
            )
        instance_id = key[len(_INSTANCE_KEY):]
        return self.runtime.bus.on_update(
            instance_id,
            lambda topic, event: self._on_instance_update(instance_id, event),
        )

    async def _on_instance_update(self, instance_id: str, event: dict[str, Any]) -> None:
        task = self.context.get(instance_id)
        if task is None or task.cancelled:
            return
        await self._emit_update(task, event)

    async def _on_definition_update(self, definition_id: str, event: dict[str, Any]) -> None:
        tasks = [t for t in self._tasks() if t.definition_id == definition_id]
        logger.info(f"Fanning out update for {definition_id} to {len(tasks)} instance(s)")
        for task in tasks:
            await self._emit_update(task, event)

    async def _emit_update(self, task: ActiveTask, event: dict[str, Any]) -> None:
        instance = await self.runtime.registry.get(task.instance_id)
        if instance is None or instance.lifecycle_status.is_terminal:
            return
        context = task.to_context(instance.lifecycle_status)
        context.user_status = instance.user_status
        payload = {k: v for k, v in event.items() if k not in ("instance_id", "definition_id")}
        self.emit(
            FlowMessage(
                workflow_context=context,
                payload=payload,
                topic=f"task-package/{task.definition_id}/update",
            )
        )
