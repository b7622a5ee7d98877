"""Entity state operators: state memoriser, change filter and mode gate.

These operators track arbitrary entities (a bed, a sensor) across messages.
The entity id is read from a configurable field of the message.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, ClassVar

from pydantic import Field, field_validator

from task_package.engine.operators.base import Operator, OperatorConfig
from task_package.engine.paths import get_path, split_fields
from task_package.models.gate import DEFAULT_ENTITY, DEFAULT_SCOPE, ModeState
from task_package.models.task_package import FlowMessage, utc_now
from task_package.services.edt_memory import FilterRecord
from task_package.services.event_bus import Subscription

logger = logging.getLogger(__name__)

# Book-keeping fields excluded when comparing entity states
_STATE_META = ("last_updated", "update_count", "last_state_change")

CONTROL_PREFIX = "edt-mode/"


class _EntityConfig(OperatorConfig):
    entity_id_field: str = "entity_id"
    tracked_fields: list[str] = Field(default_factory=list)

    @field_validator("tracked_fields", mode="before")
    @classmethod
    def _split(cls, value: Any) -> list[str]:
        return split_fields(value)


def _snapshot(message: FlowMessage, fields: list[str]) -> dict[str, Any]:
    if fields:
        values = {}
        for field in fields:
            value = get_path(message, field)
            if value is not None:
                values[field] = value
        return values
    if isinstance(message.payload, dict):
        return dict(message.payload)
    return {"payload": message.payload}


def _without_meta(state: dict[str, Any], *extra: str) -> dict[str, Any]:
    skip = set(_STATE_META) | set(extra)
    return {k: v for k, v in state.items() if k not in skip}


class StateMemoriserConfig(_EntityConfig):
    memory_name: str = "default"


class StateMemoriserOperator(Operator):
    """Remembers the last state of each entity and reports whether it changed."""

    type_name: ClassVar[str] = "edt-state"
    config_model: ClassVar[type[OperatorConfig]] = StateMemoriserConfig

    async def handle(self, message: FlowMessage) -> None:
        config: StateMemoriserConfig = self.config
        entity_id = get_path(message, config.entity_id_field)
        if entity_id is None or entity_id == "":
            logger.warning(f"Operator {self.operator_id}: no entity id at {config.entity_id_field}")
            self.set_status("missing entity id")
            return
        entity_id = str(entity_id)

        memory = self.runtime.state_memory
        previous = memory.get(config.memory_name, entity_id) or {}
        new_data = _snapshot(message, config.tracked_fields)

        changed = not previous or _without_meta(previous) != new_data
        now = utc_now()
        current = {
            **new_data,
            "last_updated": now,
            "update_count": previous.get("update_count", 0) + 1,
            "last_state_change": now if changed else previous.get("last_state_change", now),
        }
        memory.put(config.memory_name, entity_id, current)

        self.set_status(f"{entity_id}: {'changed' if changed else 'unchanged'}")
        self.emit(
            message.evolve(
                entity_id=entity_id,
                previous_state=_without_meta(previous, "last_state_change") if previous else None,
                current_state={k: v for k, v in current.items() if k != "last_state_change"},
                state_changed=changed,
                last_state_change=current["last_state_change"],
                memory_name=config.memory_name,
            )
        )


class FilterConfig(_EntityConfig):
    filter_name: str = "default"
    min_interval_ms: int = Field(default=0, ge=0)


class FilterOperator(Operator):
    """Drops messages that arrive too soon after the last pass for the same
    entity, or whose tracked fields did not change since the last pass.
    """

    type_name: ClassVar[str] = "edt-filter"
    config_model: ClassVar[type[OperatorConfig]] = FilterConfig

    clock: Callable[[], float] = staticmethod(time.monotonic)

    async def handle(self, message: FlowMessage) -> None:
        config: FilterConfig = self.config
        entity_id = get_path(message, config.entity_id_field)
        if entity_id is None or entity_id == "":
            logger.warning(f"Operator {self.operator_id}: no entity id at {config.entity_id_field}")
            return
        entity_id = str(entity_id)

        memory = self.runtime.filter_memory
        last = memory.get(config.filter_name, entity_id)
        now = self.clock()
        since_last_ms = (now - last.passed_at) * 1000 if last else None

        if since_last_ms is not None and since_last_ms < config.min_interval_ms:
            logger.debug(f"Filter {config.filter_name}: {entity_id} within min interval")
            return

        values = _snapshot(message, config.tracked_fields) if config.tracked_fields else {}
        if config.tracked_fields and last is not None and values == last.values:
            logger.debug(f"Filter {config.filter_name}: {entity_id} unchanged")
            return

        memory.put(config.filter_name, entity_id, FilterRecord(passed_at=now, values=values))
        self.emit(
            message.evolve(
                filter_info={
                    "entity_id": entity_id,
                    "filter_name": config.filter_name,
                    "passed_at": utc_now(),
                    "time_since_last_ms": since_last_ms,
                }
            )
        )


class ModeGateConfig(OperatorConfig):
    scope: str = DEFAULT_SCOPE
    entity_id_field: str | None = None
    default_enabled: bool = True


class ModeGateOperator(Operator):
    """Passes messages only while the (scope, entity) gate is enabled.

    Messages on ``edt-mode/<scope>/<action>`` control the gate instead of
    passing through; actions are enable, disable, toggle and status. The
    second output carries status messages for gate changes.
    """

    type_name: ClassVar[str] = "edt-mode"
    outputs: ClassVar[int] = 2
    config_model: ClassVar[type[OperatorConfig]] = ModeGateConfig

    def __init__(self, operator_id: str, config: dict[str, Any] | OperatorConfig | None = None) -> None:
        super().__init__(operator_id, config)
        self.entity_states: dict[str, bool] = {}
        self._subscription: Subscription | None = None

    async def start(self) -> None:
        self._subscription = self.runtime.bus.on_mode_change(self.config.scope, self._on_mode_change)
        self._refresh_status()

    async def close(self) -> None:
        if self._subscription is not None:
            self.runtime.bus.unsubscribe(self._subscription)
            self._subscription = None
        await super().close()

    def _on_mode_change(self, topic: str, event: dict[str, Any]) -> None:
        entity_id = event.get("entity_id")
        if event.get("action") == "clear_scope":
            self.entity_states.clear()
        elif entity_id is not None:
            self.entity_states[entity_id] = bool(event.get("enabled"))
        self._refresh_status()

    def _refresh_status(self) -> None:
        disabled = sorted(e for e, enabled in self.entity_states.items() if not enabled)
        if disabled:
            self.set_status(f"{self.config.scope}: disabled for {', '.join(disabled)}")
        else:
            self.set_status(f"{self.config.scope}: enabled")

    def _entity(self, message: FlowMessage) -> str:
        if not self.config.entity_id_field:
            return DEFAULT_ENTITY
        value = get_path(message, self.config.entity_id_field)
        return str(value) if value not in (None, "") else DEFAULT_ENTITY

    def _status_message(self, state: ModeState, action: str) -> FlowMessage:
        return FlowMessage(
            topic=f"edt-mode/status/{state.scope}",
            payload={
                "scope": state.scope,
                "entity_id": state.entity_id,
                "enabled": state.enabled,
                "action": action,
                "changed_at": state.updated_at or utc_now(),
            },
        )

    async def handle(self, message: FlowMessage) -> None:
        if message.topic and message.topic.startswith(CONTROL_PREFIX):
            await self._control(message)
            return

        entity_id = self._entity(message)
        state, created = await self.runtime.mode_store.ensure_mode_state(
            self.config.scope, entity_id, self.config.default_enabled
        )
        self.entity_states[entity_id] = state.enabled
        if created:
            self.emit(self._status_message(state, "auto_create"), 1)
            self._refresh_status()

        if not state.enabled:
            logger.debug(f"Gate {self.config.scope}/{entity_id} is disabled; dropping message")
            return

        self.emit(
            message.evolve(
                edt_mode={
                    "scope": self.config.scope,
                    "entity_id": entity_id,
                    "enabled": True,
                    "checked_at": utc_now(),
                }
            ),
            0,
        )

    async def _control(self, message: FlowMessage) -> None:
        parts = message.topic.split("/")
        if len(parts) < 3:
            logger.warning(f"Malformed gate control topic: {message.topic}")
            return
        scope, action = parts[1], parts[-1]
        if scope != self.config.scope:
            return

        entity_id = self._entity(message)
        store = self.runtime.mode_store
        current = await store.get_or_default(scope, entity_id)
        if not current.is_default:
            self.entity_states[entity_id] = current.enabled

        if action == "status":
            self.emit(self._status_message(current, "status"), 1)
            return

        if action == "enable":
            target = True
        elif action == "disable":
            target = False
        elif action == "toggle":
            target = not current.enabled
        else:
            logger.warning(f"Unknown gate action {action!r} on {message.topic}")
            return

        if target == current.enabled and not current.is_default:
            return

        reason = message.extra("reason")
        if reason is None and isinstance(message.payload, dict):
            reason = message.payload.get("reason")
        state = await store.set_mode_state(
            scope, entity_id, target, reason=reason, updated_by=self.operator_id
        )
        self.runtime.bus.emit_mode_change(
            scope,
            {"scope": scope, "entity_id": entity_id, "enabled": state.enabled, "action": action},
        )
        self.emit(self._status_message(state, action), 1)
