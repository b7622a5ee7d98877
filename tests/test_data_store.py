"""Tests for the TTL payload store."""

import pytest

from task_package.services.data_store import DataStore


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return DataStore(default_ttl=10, clock=clock)


def test_entries_expire_lazily(store, clock):
    store.set("a", {"x": 1})

    clock.now = 9.9
    assert store.get("a").payload == {"x": 1}
    clock.now = 10
    assert store.get("a") is None
    assert len(store) == 0


def test_per_entry_ttl(store, clock):
    store.set("short", 1, ttl=1)
    store.set("long", 2)

    clock.now = 5

    assert "short" not in store
    assert "long" in store


def test_extend(store, clock):
    store.set("a", 1)
    clock.now = 8

    assert store.extend("a")
    clock.now = 17
    assert "a" in store
    assert not store.extend("missing")


def test_cleanup_expired(store, clock):
    store.set("a", 1, ttl=1)
    store.set("b", 2, ttl=1)
    store.set("c", 3)

    clock.now = 2

    assert store.cleanup_expired() == 2
    assert len(store) == 1


@pytest.mark.parametrize(
    ("status", "extended"),
    [("completed", True), ("cancelled", True), ("failed", False)],
)
def test_finished_instances_keep_their_data(store, clock, status, extended):
    store.set("i-1", {"a": 1})
    clock.now = 9

    store.handle_complete("task-package/complete/i-1", {"instance_id": "i-1", "lifecycle_status": status})
    clock.now = 15

    assert ("i-1" in store) is extended
