"""Operators that stash and retrieve per-instance payload data."""

from __future__ import annotations

import logging
from typing import ClassVar

from pydantic import Field

from task_package.engine.operators.base import Operator, OperatorConfig
from task_package.engine.paths import set_path
from task_package.models.task_package import FlowMessage, LifecycleStatus, utc_now

logger = logging.getLogger(__name__)

_FINISHED = (LifecycleStatus.COMPLETED, LifecycleStatus.CANCELLED)


class DataSetOperator(Operator):
    """Stores the message payload under its instance id and passes it on."""

    type_name: ClassVar[str] = "data-set"

    async def handle(self, message: FlowMessage) -> None:
        context = self.require_context(message)
        if context is None:
            return

        store = self.runtime.data_store
        store.set(
            context.instance_id,
            message.payload,
            metadata={
                "definition_id": context.definition_id,
                "display_name": context.cached_display_name,
                "principal": context.principal,
                "lifecycle_status": context.lifecycle_status.value,
                "created_at": context.created_at,
            },
        )
        if context.lifecycle_status in _FINISHED:
            store.extend(context.instance_id)

        store.cleanup_expired()
        self.set_status(f"{len(store)} stored")
        self.emit(message)


class DataGetConfig(OperatorConfig):
    output_field: str = "stored_data"
    fail_on_missing: bool = True


class DataGetOperator(Operator):
    """Attaches previously stored data for the message's instance."""

    type_name: ClassVar[str] = "data-get"
    config_model: ClassVar[type[OperatorConfig]] = DataGetConfig

    async def handle(self, message: FlowMessage) -> None:
        context = self.require_context(message)
        if context is None:
            return

        entry = self.runtime.data_store.get(context.instance_id)
        if entry is None:
            if self.config.fail_on_missing:
                logger.warning(f"No stored data for instance {context.instance_id}")
                self.set_status("missing data")
                return
            self.emit(set_path(message, self.config.output_field, None))
            return

        value = {
            "data": entry.payload,
            "metadata": entry.metadata,
            "stored_at": entry.stored_at,
            "retrieved_at": utc_now(),
        }
        self.emit(set_path(message, self.config.output_field, value))


class DataStoreConfig(OperatorConfig):
    key_field: str = "workflow_context.instance_id"
    ttl_ms: int = Field(default=3_600_000, gt=0)


class DataStoreOperator(Operator):
    """Stores the payload under a key read from the message, with its own TTL."""

    type_name: ClassVar[str] = "data-store"
    config_model: ClassVar[type[OperatorConfig]] = DataStoreConfig

    async def handle(self, message: FlowMessage) -> None:
        key = self.field(message, self.config.key_field)
        if not isinstance(key, str) or not key:
            logger.warning(f"Operator {self.operator_id}: no key at {self.config.key_field}")
            self.set_status("missing key")
            return

        store = self.runtime.data_store
        store.set(key, message.payload, ttl=self.config.ttl_ms / 1000)
        store.cleanup_expired()
        self.set_status(f"{len(store)} stored")
        self.emit(message)
