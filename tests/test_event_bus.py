"""Tests for the in-process event bus."""

import logging

import pytest

from task_package.services.event_bus import EventBus, EventBusClosedError, topic_for


class TestEventBus:
    """Tests for EventBus subscriptions and delivery."""

    def setup_method(self):
        self.bus = EventBus(max_listeners=2)
        self.received: list[tuple[str, dict]] = []

    def _listener(self, topic, payload):
        self.received.append((topic, payload))

    def test_topic_for(self):
        assert topic_for("cancel", "abc") == "task-package/cancel/abc"

    async def test_exact_subscription(self):
        self.bus.on_cancel("abc", self._listener)

        delivered = self.bus.emit_cancel("abc", {"instance_id": "abc"})
        self.bus.emit_cancel("other", {"instance_id": "other"})

        assert delivered == 1
        assert self.received == [("task-package/cancel/abc", {"instance_id": "abc"})]

    async def test_wildcard_subscription(self):
        self.bus.on_complete("*", self._listener)

        self.bus.emit_complete("one", {"instance_id": "one"})
        self.bus.emit_complete("two", {"instance_id": "two"})
        self.bus.emit_cancel("one", {})

        assert [t for t, _ in self.received] == [
            "task-package/complete/one",
            "task-package/complete/two",
        ]

    async def test_unsubscribe(self):
        subscription = self.bus.on_update("tp01", self._listener)
        self.bus.unsubscribe(subscription)

        assert self.bus.emit_update("tp01", {}) == 0
        assert self.received == []
        assert self.bus.listener_count("task-package/update/tp01") == 0

    async def test_async_listener_is_scheduled(self):
        seen = []

        async def listener(topic, payload):
            seen.append(payload["n"])

        self.bus.on_create("tp01", listener)
        self.bus.emit_create("tp01", {"n": 1})

        # Publishing does not wait for the listener
        assert seen == []
        await self.bus.drain()
        assert seen == [1]

    async def test_failing_listener_does_not_break_publish(self):
        def broken(topic, payload):
            raise ValueError("boom")

        self.bus.on_cancel("abc", broken)
        self.bus.on_cancel("abc", self._listener)

        assert self.bus.emit_cancel("abc", {}) == 2
        assert len(self.received) == 1

    async def test_publish_on_closed_bus_raises(self):
        await self.bus.close()

        with pytest.raises(EventBusClosedError):
            self.bus.emit_cancel("abc", {})

    async def test_listener_cap_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            for _ in range(3):
                self.bus.on_cancel("abc", self._listener)

        assert "has 3 listeners" in caplog.text
        assert self.bus.listener_count("task-package/cancel/abc") == 3
