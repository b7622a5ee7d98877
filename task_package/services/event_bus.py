"""In-process publish/subscribe bus for lifecycle events.

Topics follow ``task-package/<verb>/<key>``. Listeners are called with the
topic and the payload dict. Coroutine listeners are scheduled on the running
loop so a publisher never waits for a listener to finish.
"""

import asyncio
import fnmatch
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TOPIC_ROOT = "task-package"
MAX_LISTENERS = 100

Listener = Callable[[str, dict[str, Any]], Awaitable[None] | None]


class EventBusClosedError(RuntimeError):
    """Raised when publishing on a closed bus."""


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``subscribe``; pass it back to ``unsubscribe``."""

    topic: str
    listener: Listener
    active: bool = field(default=True)

    @property
    def is_pattern(self) -> bool:
        return any(ch in self.topic for ch in "*?[")


def topic_for(verb: str, key: str) -> str:
    return f"{TOPIC_ROOT}/{verb}/{key}"


class EventBus:
    """Topic-addressed event bus with exact and wildcard subscriptions."""

    def __init__(self, max_listeners: int = MAX_LISTENERS) -> None:
        self.max_listeners = max_listeners
        self._exact: dict[str, list[Subscription]] = {}
        self._patterns: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    def subscribe(self, topic: str, listener: Listener) -> Subscription:
        subscription = Subscription(topic=topic, listener=listener)
        if subscription.is_pattern:
            self._patterns.append(subscription)
        else:
            listeners = self._exact.setdefault(topic, [])
            listeners.append(subscription)
            if len(listeners) > self.max_listeners:
                logger.warning(
                    f"Topic {topic} has {len(listeners)} listeners (limit {self.max_listeners})"
                )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        if subscription.is_pattern:
            if subscription in self._patterns:
                self._patterns.remove(subscription)
            return
        listeners = self._exact.get(subscription.topic)
        if listeners and subscription in listeners:
            listeners.remove(subscription)
            if not listeners:
                del self._exact[subscription.topic]

    def listener_count(self, topic: str) -> int:
        exact = len(self._exact.get(topic, []))
        return exact + sum(1 for s in self._patterns if fnmatch.fnmatchcase(topic, s.topic))

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Deliver an event to every matching listener.

        Returns:
            Number of listeners the event was delivered to.

        Raises:
            EventBusClosedError: If the bus has been closed.
        """
        if self._closed:
            raise EventBusClosedError(f"Cannot publish {topic}: event bus is closed")

        targets = list(self._exact.get(topic, []))
        targets.extend(s for s in self._patterns if fnmatch.fnmatchcase(topic, s.topic))

        for subscription in targets:
            if subscription.active:
                self._dispatch(subscription, topic, payload)

        logger.debug(f"Published {topic} to {len(targets)} listener(s)")
        return len(targets)

    def _dispatch(self, subscription: Subscription, topic: str, payload: dict[str, Any]) -> None:
        try:
            result = subscription.listener(topic, payload)
        except Exception as e:
            logger.exception(f"Listener for {topic} failed: {e}")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(lambda t, topic=topic: self._on_listener_done(t, topic))

    def _on_listener_done(self, task: asyncio.Task, topic: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Listener for {topic} failed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every scheduled listener has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._exact.clear()
        self._patterns.clear()

    # =========================================================================
    # Lifecycle topics
    # =========================================================================

    def emit_create(self, definition_id: str, payload: dict[str, Any]) -> int:
        return self.publish(topic_for("create", definition_id), payload)

    def emit_cancel(self, instance_id: str, payload: dict[str, Any]) -> int:
        return self.publish(topic_for("cancel", instance_id), payload)

    def emit_complete(self, instance_id: str, payload: dict[str, Any]) -> int:
        return self.publish(topic_for("complete", instance_id), payload)

    def emit_update(self, key: str, payload: dict[str, Any]) -> int:
        return self.publish(topic_for("update", key), payload)

    def emit_mode_change(self, scope: str, payload: dict[str, Any]) -> int:
        return self.publish(topic_for("edt-mode-change", scope), payload)

    def on_create(self, definition_id: str, listener: Listener) -> Subscription:
        return self.subscribe(topic_for("create", definition_id), listener)

    def on_cancel(self, instance_id: str, listener: Listener) -> Subscription:
        return self.subscribe(topic_for("cancel", instance_id), listener)

    def on_complete(self, instance_id: str, listener: Listener) -> Subscription:
        """Subscribe to completion of one instance, or ``*`` for all of them."""
        return self.subscribe(topic_for("complete", instance_id), listener)

    def on_update(self, key: str, listener: Listener) -> Subscription:
        return self.subscribe(topic_for("update", key), listener)

    def on_mode_change(self, scope: str, listener: Listener) -> Subscription:
        return self.subscribe(topic_for("edt-mode-change", scope), listener)
