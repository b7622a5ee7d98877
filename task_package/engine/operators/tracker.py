"""Maps external keys (an order number, a device id) to instance ids."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from task_package.engine.operators.base import Operator, OperatorConfig
from task_package.models.task_package import FlowMessage, Instance

logger = logging.getLogger(__name__)


class TrackerAction(str, Enum):
    STORE = "store"
    LOOKUP = "lookup"
    REMOVE = "remove"
    LIST = "list"


class TrackerConfig(OperatorConfig):
    action: TrackerAction = TrackerAction.STORE
    key_field: str = "entity_id"
    definition_id: str | None = None


def _minutes_since(timestamp: str) -> int:
    created = datetime.fromisoformat(timestamp)
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return int((datetime.now(UTC) - created).total_seconds() // 60)


def _summary(instance: Instance) -> dict[str, Any]:
    return {
        "instance_id": instance.instance_id,
        "definition_id": instance.definition_id,
        "display_name": instance.cached_display_name,
        "lifecycle_status": instance.lifecycle_status.value,
        "user_status": instance.user_status,
        "created_at": instance.created_at,
        "minutes_since_creation": _minutes_since(instance.created_at),
    }


class TrackerOperator(Operator):
    """Keeps a key -> instance mapping in the graph context.

    ``store`` records the message's instance under the key, ``lookup``
    attaches the mapped instance, ``remove`` forgets the key, and ``list``
    reports every instance of the definition split by activity.
    """

    type_name: ClassVar[str] = "tracker"
    config_model: ClassVar[type[OperatorConfig]] = TrackerConfig

    def _mapping_key(self, key: str) -> str:
        return f"tracker:{self.config.definition_id or 'all'}:{key}"

    def _key(self, message: FlowMessage) -> str:
        value = self.field(message, self.config.key_field)
        if value is None or value == "":
            raise ValueError(f"No tracking key at {self.config.key_field}")
        return str(value)

    async def handle(self, message: FlowMessage) -> None:
        action = self.config.action
        if action == TrackerAction.STORE:
            await self._store(message)
        elif action == TrackerAction.LOOKUP:
            await self._lookup(message)
        elif action == TrackerAction.REMOVE:
            key = self._key(message)
            removed = self.context.values.pop(self._mapping_key(key), None)
            self.emit(message.evolve(tracker={"key": key, "removed": removed is not None}))
        else:
            await self._list(message)

    async def _store(self, message: FlowMessage) -> None:
        context = self.require_context(message)
        if context is None:
            return
        key = self._key(message)
        self.context.values[self._mapping_key(key)] = context.instance_id
        self.emit(message.evolve(tracker={"key": key, "instance_id": context.instance_id}))

    async def _lookup(self, message: FlowMessage) -> None:
        key = self._key(message)
        instance_id = self.context.values.get(self._mapping_key(key))
        instance = await self.runtime.registry.get(instance_id) if instance_id else None
        if instance is None:
            self.emit(message.evolve(tracker={"key": key, "found": False}))
            return

        found = _summary(instance)
        found.update(found=True, key=key, is_active=instance.lifecycle_status.is_active)
        self.emit(message.evolve(tracker=found))

    async def _list(self, message: FlowMessage) -> None:
        instances = await self.runtime.registry.list_instances(
            definition_id=self.config.definition_id
        )
        active = [_summary(i) for i in instances if i.lifecycle_status.is_active]
        completed = [_summary(i) for i in instances if not i.lifecycle_status.is_active]
        self.set_status(f"{len(active)} active")
        self.emit(
            message.evolve(
                tracker={
                    "total_count": len(instances),
                    "active_count": len(active),
                    "completed_count": len(completed),
                    "active_tasks": active,
                    "completed_tasks": completed,
                    "all_tasks": active + completed,
                }
            )
        )
