"""Entry, exit and status operators that drive an instance through its lifecycle."""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import field_validator

from task_package.engine.operators.base import Operator, OperatorConfig, OperatorError
from task_package.models.task_package import (
    ActiveTask,
    DefinitionCreate,
    FlowMessage,
    LifecycleStatus,
    utc_now,
)
from task_package.services.event_bus import Subscription
from task_package.services.result import Err

logger = logging.getLogger(__name__)


def _schema_errors(validator: Draft202012Validator, payload: Any) -> list[str]:
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    return [e.message for e in errors]


class StartConfig(OperatorConfig):
    definition_id: str
    display_name: str | None = None
    form_path: str | None = None
    payload_schema: dict[str, Any] | None = None

    @field_validator("payload_schema", mode="before")
    @classmethod
    def _parse_schema(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value


class StartOperator(Operator):
    """Entry operator: registers its definition and starts new instances.

    On deploy the definition is upserted into the store. Each create event
    for the definition registers an active-task descriptor in the graph
    context before the first message is emitted.
    """

    type_name: ClassVar[str] = "start"
    config_model: ClassVar[type[OperatorConfig]] = StartConfig

    def __init__(self, operator_id: str, config: dict[str, Any] | OperatorConfig | None = None) -> None:
        super().__init__(operator_id, config)
        self._subscription: Subscription | None = None
        self._validator: Draft202012Validator | None = None

    async def start(self) -> None:
        config: StartConfig = self.config
        if config.payload_schema is not None:
            try:
                Draft202012Validator.check_schema(config.payload_schema)
            except SchemaError as e:
                raise OperatorError(f"Invalid payload schema: {e.message}", self.type_name) from e
            self._validator = Draft202012Validator(config.payload_schema)

        await self.runtime.task_store.upsert_definition(
            DefinitionCreate(
                id=config.definition_id,
                display_name=config.display_name or config.definition_id,
                form_path=config.form_path or config.definition_id,
                payload_schema=config.payload_schema,
            )
        )
        self._subscription = self.runtime.bus.on_create(config.definition_id, self._on_create)
        self.set_status(f"listening for {config.definition_id}")

    async def close(self) -> None:
        if self._subscription is not None:
            self.runtime.bus.unsubscribe(self._subscription)
            self._subscription = None
        await super().close()

    async def handle(self, message: FlowMessage) -> None:
        logger.debug(f"Entry operator {self.operator_id} ignores inbound messages")

    async def _on_create(self, topic: str, event: dict[str, Any]) -> None:
        config: StartConfig = self.config
        instance_id = event.get("instance_id")
        if not instance_id:
            logger.error(f"Create event on {topic} has no instance_id")
            return

        registry = self.runtime.registry
        instance = await registry.get(instance_id)
        if instance is None:
            logger.error(f"Create event for unknown instance {instance_id}")
            return
        if instance.lifecycle_status.is_terminal:
            logger.warning(f"Instance {instance_id} is already {instance.lifecycle_status.value}")
            return

        payload = event.get("payload") or {}
        if self._validator is not None:
            errors = _schema_errors(self._validator, payload)
            if errors:
                logger.error(f"Payload for {instance_id} failed schema validation: {errors}")
                self.set_status("invalid payload")
                await registry.finish(instance_id, LifecycleStatus.FAILED)
                return

        descriptor = ActiveTask(
            instance_id=instance_id,
            definition_id=config.definition_id,
            cached_display_name=instance.cached_display_name,
            principal=instance.principal,
            created_at=instance.created_at,
        )
        if not self.context.register(descriptor):
            logger.warning(f"Instance {instance_id} is already registered in {self.context.graph_id}")
            return
        self.graph.refresh_watchers()

        # A cancel accepted before this event arrived leaves the row in cancelling
        status = LifecycleStatus.STARTED
        if instance.lifecycle_status == LifecycleStatus.CANCELLING:
            self.context.mark_cancelled(instance_id)
            status = LifecycleStatus.CANCELLING
        else:
            result = await registry.transition(instance_id, LifecycleStatus.STARTED)
            if isinstance(result, Err):
                if result.current_status == LifecycleStatus.CANCELLING.value:
                    self.context.mark_cancelled(instance_id)
                    status = LifecycleStatus.CANCELLING
                else:
                    logger.error(f"Could not start instance {instance_id}: {result.message}")
                    self.context.remove(instance_id)
                    self.graph.refresh_watchers()
                    return

        self.set_status(f"{len(self.context)} active")

        context = descriptor.to_context(status)
        context.user_status = instance.user_status
        self.emit(
            FlowMessage(
                workflow_context=context,
                payload=payload,
                topic=f"task-package/{config.definition_id}/started",
            )
        )


class EndOperator(Operator):
    """Exit operator: writes the terminal status and removes the descriptor."""

    type_name: ClassVar[str] = "end"
    outputs: ClassVar[int] = 0

    async def handle(self, message: FlowMessage) -> None:
        context = self.require_context(message)
        if context is None:
            return

        instance_id = context.instance_id
        descriptor = self.context.get(instance_id)
        instance = await self.runtime.registry.get(instance_id)

        if instance is None:
            logger.error(f"Exit reached for unknown instance {instance_id}")
            self.context.remove(instance_id)
            return

        if instance.lifecycle_status.is_terminal:
            logger.warning(
                f"Exit reached for instance {instance_id} already {instance.lifecycle_status.value}"
            )
            self.context.remove(instance_id)
            return

        if descriptor is None:
            logger.error(f"Exit reached for {instance_id} without an active-task descriptor")
            target = LifecycleStatus.FAILED
        elif descriptor.cancelled or instance.lifecycle_status == LifecycleStatus.CANCELLING:
            target = LifecycleStatus.CANCELLED
        elif message.cleanup_reason == "error":
            target = LifecycleStatus.FAILED
        else:
            target = LifecycleStatus.COMPLETED

        result = await self.runtime.registry.finish(instance_id, target)
        self.context.remove(instance_id)
        self.graph.refresh_watchers()

        if isinstance(result, Err):
            logger.error(f"Could not finish instance {instance_id} as {target.value}: {result.message}")
            self.set_status(f"error: {result.message}")
            return

        self.set_status(f"{instance_id[:8]} {target.value}")


class OngoingOperator(Operator):
    """Marks an instance as ongoing. Storage failures do not stop the flow."""

    type_name: ClassVar[str] = "ongoing"

    async def handle(self, message: FlowMessage) -> None:
        context = self.require_context(message)
        if context is None:
            return

        if message.is_cleanup:
            self.emit(message)
            return

        result = await self.runtime.registry.transition(context.instance_id, LifecycleStatus.ONGOING)
        if isinstance(result, Err):
            logger.debug(f"Ongoing not recorded for {context.instance_id}: {result.message}")
            self.emit(message)
            return

        updated = context.model_copy(
            update={"lifecycle_status": LifecycleStatus.ONGOING, "updated_at": utc_now()}
        )
        self.emit(
            message.evolve(
                workflow_context=updated,
                topic=f"task-package/{context.definition_id}/ongoing",
            )
        )


class UserStatusConfig(OperatorConfig):
    user_status: str | None = None


class UserStatusOperator(Operator):
    """Writes the free-form user status of the instance in the message."""

    type_name: ClassVar[str] = "user-status"
    config_model: ClassVar[type[OperatorConfig]] = UserStatusConfig

    def _resolve(self, message: FlowMessage) -> str | None:
        if isinstance(message.payload, dict) and message.payload.get("update") is not None:
            return str(message.payload["update"])
        if message.extra("user_status") is not None:
            return str(message.extra("user_status"))
        return self.config.user_status or None

    async def handle(self, message: FlowMessage) -> None:
        context = self.require_context(message)
        if context is None:
            return

        value = self._resolve(message)
        if value is None:
            logger.warning(f"Operator {self.operator_id}: no user status to set")
            return

        result = await self.runtime.registry.set_user_status(context.instance_id, value)
        if isinstance(result, Err):
            raise RuntimeError(result.message)

        self.set_status(value)
        updated = context.model_copy(update={"user_status": value, "updated_at": utc_now()})
        self.emit(message.evolve(workflow_context=updated))
