"""Instance lifecycle: creation, transitions, cancellation and completion.

The registry is the only writer of ``lifecycle_status``. It validates every
change against the transition table, persists it, and publishes the
matching lifecycle event.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from typing import Any

from pydantic import BaseModel

from task_package.db.task_store import TaskStore
from task_package.engine.graph import GraphDirectory
from task_package.models.task_package import Definition, Instance, LifecycleStatus
from task_package.services.event_bus import EventBus
from task_package.services.result import Err, ErrorKind, Ok

logger = logging.getLogger(__name__)

S = LifecycleStatus

TRANSITIONS: dict[LifecycleStatus | None, frozenset[LifecycleStatus]] = {
    None: frozenset({S.CREATED}),
    S.CREATED: frozenset({S.STARTED, S.CANCELLING, S.COMPLETED, S.FAILED}),
    S.STARTED: frozenset({S.ONGOING, S.CANCELLING, S.COMPLETED, S.FAILED}),
    S.ONGOING: frozenset({S.ONGOING, S.CANCELLING, S.COMPLETED, S.FAILED}),
    S.CANCELLING: frozenset({S.CANCELLED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.FAILED: frozenset(),
}

TERMINAL_WRITE_ATTEMPTS = 3
TERMINAL_WRITE_BACKOFF = 0.1


def can_transition(current: LifecycleStatus | None, target: LifecycleStatus) -> bool:
    return target in TRANSITIONS[current]


class CancelOutcome(BaseModel):
    status: LifecycleStatus = LifecycleStatus.CANCELLING
    already_cancelling: bool = False


class InstanceRegistry:
    """Owns instance lifecycle state in the persistent store."""

    def __init__(self, store: TaskStore, bus: EventBus, graphs: GraphDirectory) -> None:
        self.store = store
        self.bus = bus
        self.graphs = graphs

    # =========================================================================
    # Queries
    # =========================================================================

    def annotate(self, instance: Instance) -> Instance:
        """Flag non-terminal instances that no deployed graph is running."""
        instance.orphaned = (
            not instance.lifecycle_status.is_terminal and not self.graphs.holds(instance.instance_id)
        )
        return instance

    async def get(self, instance_id: str) -> Instance | None:
        instance = await self.store.get_instance(instance_id)
        return self.annotate(instance) if instance else None

    async def list_instances(self, **filters: Any) -> list[Instance]:
        return [self.annotate(i) for i in await self.store.list_instances(**filters)]

    # =========================================================================
    # Creation
    # =========================================================================

    async def start(
        self,
        definition: Definition,
        principal: str | None,
        payload: dict[str, Any],
    ) -> Ok[Instance] | Err:
        """Persist a new instance and announce it to entry operators."""
        instance_id = str(uuid.uuid4())
        try:
            instance = await self.store.create_instance(instance_id, definition, principal, payload)
        except sqlite3.Error as e:
            logger.error(f"Failed to persist new instance of {definition.id}: {e}")
            return Err(ErrorKind.PROVIDER_UNAVAILABLE, "Failed to persist instance")

        logger.info(f"Created instance {instance_id} of {definition.id} for {principal}")

        delivered = self.bus.emit_create(
            definition.id,
            {
                "instance_id": instance_id,
                "definition_id": definition.id,
                "principal": principal,
                "payload": payload,
            },
        )
        if delivered == 0:
            logger.warning(f"No entry operator is listening for definition {definition.id}")
        return Ok(instance)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def transition(self, instance_id: str, target: LifecycleStatus) -> Ok[Instance] | Err:
        """Move a non-terminal instance to ``target``.

        A repeated ``ongoing`` is accepted and only refreshes ``updated_at``.
        """
        if target.is_terminal:
            return await self.finish(instance_id, target)

        instance = await self.store.get_instance(instance_id)
        if instance is None:
            return Err(ErrorKind.NOT_FOUND, f"Instance {instance_id} not found")

        current = instance.lifecycle_status
        if not can_transition(current, target):
            return Err(
                ErrorKind.STATE_CONFLICT,
                f"Cannot move instance from {current.value} to {target.value}",
                current_status=current.value,
            )

        try:
            updated = await self.store.update_lifecycle_status(instance_id, target, expected=current)
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist {target.value} for {instance_id}: {e}")
            return Err(ErrorKind.PROVIDER_UNAVAILABLE, "Failed to persist lifecycle status")

        if not updated:
            latest = await self.store.get_instance(instance_id)
            status = latest.lifecycle_status.value if latest else None
            return Err(
                ErrorKind.STATE_CONFLICT,
                f"Instance {instance_id} changed concurrently",
                current_status=status,
            )

        if target != current:
            logger.info(f"Instance {instance_id}: {current.value} -> {target.value}")
        instance.lifecycle_status = target
        return Ok(instance)

    async def finish(self, instance_id: str, target: LifecycleStatus) -> Ok[Instance] | Err:
        """Write a terminal status, retrying storage failures, then publish completion."""
        if not target.is_terminal:
            raise ValueError(f"{target.value} is not a terminal status")

        delay = TERMINAL_WRITE_BACKOFF
        for attempt in range(1, TERMINAL_WRITE_ATTEMPTS + 1):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                return Err(ErrorKind.NOT_FOUND, f"Instance {instance_id} not found")

            current = instance.lifecycle_status
            if current == target:
                return Ok(instance)
            if not can_transition(current, target):
                return Err(
                    ErrorKind.STATE_CONFLICT,
                    f"Cannot move instance from {current.value} to {target.value}",
                    current_status=current.value,
                )

            try:
                updated = await self.store.update_lifecycle_status(
                    instance_id, target, expected=current
                )
            except sqlite3.Error as e:
                logger.warning(
                    f"Terminal write for {instance_id} failed (attempt {attempt}/{TERMINAL_WRITE_ATTEMPTS}): {e}"
                )
                if attempt < TERMINAL_WRITE_ATTEMPTS:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue

            if not updated:
                # Row moved underneath us; re-evaluate against the new status
                continue

            logger.info(f"Instance {instance_id}: {current.value} -> {target.value}")
            instance.lifecycle_status = target
            self.bus.emit_complete(
                instance_id,
                {
                    "instance_id": instance_id,
                    "definition_id": instance.definition_id,
                    "lifecycle_status": target.value,
                },
            )
            return Ok(instance)

        logger.error(f"Giving up on terminal write {target.value} for {instance_id}")
        return Err(ErrorKind.PROVIDER_UNAVAILABLE, "Failed to persist terminal status")

    async def set_user_status(self, instance_id: str, user_status: str) -> Ok[str] | Err:
        try:
            updated = await self.store.update_user_status(instance_id, user_status)
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist user status for {instance_id}: {e}")
            return Err(ErrorKind.PROVIDER_UNAVAILABLE, "Failed to persist user status")
        if not updated:
            return Err(ErrorKind.NOT_FOUND, f"Instance {instance_id} not found")
        return Ok(user_status)

    # =========================================================================
    # Cancellation and updates
    # =========================================================================

    async def cancel(
        self,
        definition_id: str,
        instance_id: str,
        principal: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Ok[CancelOutcome] | Err:
        """Request cancellation of a running instance.

        Persists ``cancelling``, flags the descriptor in the graph holding it,
        and publishes the cancel event. If any step fails the earlier ones
        are undone so no partial cancellation is left behind.
        """
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            return Err(ErrorKind.NOT_FOUND, f"Instance {instance_id} not found")

        if instance.definition_id != definition_id:
            return Err(
                ErrorKind.VALIDATION,
                f"Instance {instance_id} does not belong to definition {definition_id}",
            )

        previous = instance.lifecycle_status
        for _ in range(TERMINAL_WRITE_ATTEMPTS):
            if previous == LifecycleStatus.CANCELLING:
                return Ok(CancelOutcome(already_cancelling=True))
            if previous.is_terminal:
                return Err(
                    ErrorKind.STATE_CONFLICT,
                    f"Cannot cancel task in {previous.value} state",
                    current_status=previous.value,
                )

            try:
                updated = await self.store.update_lifecycle_status(
                    instance_id, LifecycleStatus.CANCELLING, expected=previous
                )
            except sqlite3.Error as e:
                logger.error(f"Failed to persist cancelling for {instance_id}: {e}")
                return Err(ErrorKind.PROVIDER_UNAVAILABLE, "Failed to persist cancellation")

            if updated:
                break

            # Status moved underneath us, e.g. an entry operator starting it
            latest = await self.store.get_instance(instance_id)
            if latest is None:
                return Err(ErrorKind.NOT_FOUND, f"Instance {instance_id} not found")
            previous = latest.lifecycle_status
        else:
            return Err(
                ErrorKind.STATE_CONFLICT,
                f"Instance {instance_id} changed concurrently",
                current_status=previous.value,
            )

        context = self.graphs.find(instance_id)
        flagged = False
        try:
            if context is not None and not context.is_cancelled(instance_id):
                context.mark_cancelled(instance_id)
                flagged = True
            self.bus.emit_cancel(
                instance_id,
                {
                    "instance_id": instance_id,
                    "definition_id": definition_id,
                    "principal": principal,
                    "payload": payload or {},
                },
            )
        except Exception as e:
            logger.exception(f"Cancel fan-out for {instance_id} failed, rolling back: {e}")
            if flagged and context is not None:
                context.clear_cancelled(instance_id)
            try:
                await self.store.update_lifecycle_status(
                    instance_id, previous, expected=LifecycleStatus.CANCELLING
                )
            except sqlite3.Error as rollback_error:
                logger.error(f"Rollback of cancelling for {instance_id} failed: {rollback_error}")
            return Err(ErrorKind.PROVIDER_UNAVAILABLE, "Failed to deliver cancellation")

        logger.info(
            f"Instance {instance_id}: {previous.value} -> cancelling"
            f" (descriptor {'flagged' if flagged else 'not deployed'})"
        )
        return Ok(CancelOutcome())

    async def update(
        self,
        fields: dict[str, Any],
        instance_id: str | None = None,
        definition_id: str | None = None,
    ) -> Ok[dict[str, Any]] | Err:
        """Publish an update for one instance, or for every instance of a definition.

        An instance id takes precedence; a definition id sent alongside it only
        has to match the instance.
        """
        if not instance_id and not definition_id:
            return Err(ErrorKind.VALIDATION, "instance_id or definition_id is required")

        if instance_id:
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                return Err(ErrorKind.NOT_FOUND, f"Instance {instance_id} not found")
            if definition_id and instance.definition_id != definition_id:
                return Err(
                    ErrorKind.VALIDATION,
                    f"Instance {instance_id} does not belong to definition {definition_id}",
                )
            self.bus.emit_update(
                instance_id,
                {"instance_id": instance_id, "definition_id": instance.definition_id, **fields},
            )
        else:
            self.bus.emit_update(definition_id, {"definition_id": definition_id, **fields})

        result: dict[str, Any] = {"status": "updated"}
        if instance_id:
            result["instance_id"] = instance_id
        if definition_id:
            result["definition_id"] = definition_id
        return Ok(result)
