"""Tests for the SQLite-backed stores."""

import asyncio

import pytest

from task_package.db.mode_store import ALL_ENTITIES
from task_package.models import DefinitionCreate, LifecycleStatus, ModeAction


@pytest.fixture
async def definition(runtime):
    return await runtime.task_store.upsert_definition(
        DefinitionCreate(id="tp01", display_name="Order intake", form_path="/forms/order")
    )


class TestTaskStore:
    """Tests for definitions and instances."""

    async def test_upsert_definition_refreshes_fields(self, runtime, definition):
        updated = await runtime.task_store.upsert_definition(
            DefinitionCreate(
                id="tp01",
                display_name="Order intake v2",
                payload_schema={"type": "object"},
            )
        )

        assert updated.display_name == "Order intake v2"
        assert updated.payload_schema == {"type": "object"}
        assert updated.created_at == definition.created_at
        assert len(await runtime.task_store.list_definitions()) == 1

    async def test_list_definitions_restricted(self, runtime, definition):
        await runtime.task_store.upsert_definition(DefinitionCreate(id="tp02", display_name="Other"))

        assert [d.id for d in await runtime.task_store.list_definitions(["tp02"])] == ["tp02"]
        assert await runtime.task_store.list_definitions([]) == []

    async def test_create_and_get_instance(self, runtime, definition):
        created = await runtime.task_store.create_instance("i-1", definition, "alice", {"a": 1})
        fetched = await runtime.task_store.get_instance("i-1")

        assert created.lifecycle_status == LifecycleStatus.CREATED
        assert fetched is not None
        assert fetched.cached_display_name == "Order intake"
        assert fetched.principal == "alice"

    async def test_list_instances_filters(self, runtime, definition):
        await runtime.task_store.create_instance("i-1", definition, "alice")
        await runtime.task_store.create_instance("i-2", definition, "bob")
        await runtime.task_store.update_lifecycle_status("i-2", LifecycleStatus.STARTED)

        by_principal = await runtime.task_store.list_instances(principal="alice")
        by_status = await runtime.task_store.list_instances(lifecycle_status=LifecycleStatus.STARTED)

        assert [i.instance_id for i in by_principal] == ["i-1"]
        assert [i.instance_id for i in by_status] == ["i-2"]

    async def test_terminal_rows_are_never_overwritten(self, runtime, definition):
        await runtime.task_store.create_instance("i-1", definition, "alice")
        assert await runtime.task_store.update_lifecycle_status("i-1", LifecycleStatus.COMPLETED)

        assert not await runtime.task_store.update_lifecycle_status("i-1", LifecycleStatus.STARTED)
        instance = await runtime.task_store.get_instance("i-1")
        assert instance.lifecycle_status == LifecycleStatus.COMPLETED

    async def test_expected_status_guard(self, runtime, definition):
        await runtime.task_store.create_instance("i-1", definition, "alice")

        assert not await runtime.task_store.update_lifecycle_status(
            "i-1", LifecycleStatus.ONGOING, expected=LifecycleStatus.STARTED
        )
        assert await runtime.task_store.update_lifecycle_status(
            "i-1", LifecycleStatus.STARTED, expected=LifecycleStatus.CREATED
        )

    async def test_update_user_status(self, runtime, definition):
        await runtime.task_store.create_instance("i-1", definition, "alice")

        assert await runtime.task_store.update_user_status("i-1", "Waiting for approval")
        assert not await runtime.task_store.update_user_status("missing", "x")
        assert (await runtime.task_store.get_instance("i-1")).user_status == "Waiting for approval"


class TestModeStore:
    """Tests for gate rows and history."""

    async def test_default_state_when_unset(self, runtime):
        state = await runtime.mode_store.get_or_default("bed_monitoring", "bed_1")

        assert state.enabled is True
        assert state.is_default
        assert state.reason == "Default state"

    async def test_set_mode_state_records_history(self, runtime):
        await runtime.mode_store.set_mode_state("bed_monitoring", "bed_1", False, reason="cleaning")
        state = await runtime.mode_store.set_mode_state("bed_monitoring", "bed_1", True)

        history = await runtime.mode_store.get_history("bed_monitoring", "bed_1")

        assert state.enabled is True
        assert [h.action for h in history] == [ModeAction.ENABLE, ModeAction.DISABLE]
        assert history[1].reason == "cleaning"
        assert len(await runtime.mode_store.get_scope_states("bed_monitoring")) == 1

    async def test_ensure_mode_state_creates_once(self, runtime):
        results = await asyncio.gather(
            *[runtime.mode_store.ensure_mode_state("rooms", "room_1", False) for _ in range(5)]
        )

        assert sum(1 for _, created in results if created) == 1
        assert all(state.enabled is False for state, _ in results)

    async def test_clear_scope(self, runtime):
        await runtime.mode_store.set_mode_state("rooms", "room_1", False)
        await runtime.mode_store.set_mode_state("rooms", "room_2", False)
        await runtime.mode_store.set_mode_state("beds", "bed_1", False)

        removed = await runtime.mode_store.clear_scope("rooms")

        assert removed == 2
        assert await runtime.mode_store.get_scope_states("rooms") == []
        assert len(await runtime.mode_store.get_all_states()) == 1
        latest = (await runtime.mode_store.get_history("rooms", limit=1))[0]
        assert latest.action == ModeAction.CLEAR_SCOPE
        assert latest.entity_id == ALL_ENTITIES
