"""Tests for the state memoriser, change filter and mode gate operators."""

from helpers import node
from task_package.models import FlowMessage


async def _deploy(runtime, operator):
    graph = await runtime.deploy(
        {
            "id": "edt",
            "nodes": [operator, node("out", "collector"), node("status", "collector")],
        }
    )
    return graph, graph.operators[operator["id"]]


async def _send(graph, operator, message):
    await operator.receive(message)
    await graph.wait_idle()


class TestStateMemoriser:
    async def test_reports_changes_per_entity(self, runtime):
        graph, memoriser = await _deploy(
            runtime,
            node("mem", "edt-state", ["out"], memory_name="beds", tracked_fields="payload.occupied"),
        )

        await _send(graph, memoriser, FlowMessage(entity_id="bed_1", payload={"occupied": False}))
        await _send(graph, memoriser, FlowMessage(entity_id="bed_1", payload={"occupied": False}))
        await _send(graph, memoriser, FlowMessage(entity_id="bed_1", payload={"occupied": True}))
        await _send(graph, memoriser, FlowMessage(entity_id="bed_2", payload={"occupied": True}))

        out = graph.operators["out"].messages
        assert [m.extra("state_changed") for m in out] == [True, False, True, True]
        assert out[0].extra("previous_state") is None
        assert out[2].extra("previous_state")["payload.occupied"] is False
        assert out[2].extra("current_state")["payload.occupied"] is True
        assert out[2].extra("current_state")["update_count"] == 3
        assert out[3].extra("current_state")["update_count"] == 1
        assert runtime.state_memory.entities("beds") == ["bed_1", "bed_2"]

    async def test_dropped_keys_do_not_linger(self, runtime):
        graph, memoriser = await _deploy(runtime, node("mem", "edt-state", ["out"]))

        for payload in ({"a": 1, "b": 2}, {"a": 1}, {"a": 1}, {"a": 1}):
            await _send(graph, memoriser, FlowMessage(entity_id="e1", payload=payload))

        out = graph.operators["out"].messages
        assert [m.extra("state_changed") for m in out] == [True, True, False, False]
        assert "b" not in out[-1].extra("current_state")
        assert out[-1].extra("previous_state") == {"a": 1}

    async def test_missing_entity_is_dropped(self, runtime):
        graph, memoriser = await _deploy(runtime, node("mem", "edt-state", ["out"]))

        await _send(graph, memoriser, FlowMessage(payload={"occupied": True}))

        assert graph.operators["out"].messages == []
        assert memoriser.status == "missing entity id"


class TestFilter:
    async def test_min_interval(self, runtime):
        graph, gate = await _deploy(
            runtime, node("filter", "edt-filter", ["out"], min_interval_ms=1000)
        )
        now = [100.0]
        gate.clock = lambda: now[0]

        for at in (100.0, 100.5, 101.5):
            now[0] = at
            await _send(graph, gate, FlowMessage(entity_id="sensor_1", payload={"at": at}))

        out = graph.operators["out"].messages
        assert [m.payload["at"] for m in out] == [100.0, 101.5]
        assert out[0].extra("filter_info")["time_since_last_ms"] is None
        assert out[1].extra("filter_info")["time_since_last_ms"] == 1500

    async def test_unchanged_tracked_fields_are_dropped(self, runtime):
        graph, gate = await _deploy(
            runtime, node("filter", "edt-filter", ["out"], tracked_fields=["payload.level"])
        )

        for level in (1, 1, 2):
            await _send(graph, gate, FlowMessage(entity_id="tank", payload={"level": level}))

        assert [m.payload["level"] for m in graph.operators["out"].messages] == [1, 2]

    async def test_entities_are_independent(self, runtime):
        graph, gate = await _deploy(
            runtime, node("filter", "edt-filter", ["out"], min_interval_ms=60_000)
        )

        for entity in ("a", "b", "a"):
            await _send(graph, gate, FlowMessage(entity_id=entity))

        assert [m.extra("entity_id") for m in graph.operators["out"].messages] == ["a", "b"]


class TestModeGate:
    async def _gate(self, runtime, **config):
        config.setdefault("scope", "bed_monitoring")
        config.setdefault("entity_id_field", "payload.bed")
        return await _deploy(runtime, node("gate", "edt-mode", ["out"], ["status"], **config))

    async def test_bulk_disable_drops_messages(self, runtime, client):
        graph, gate = await self._gate(runtime)

        response = await client.post(
            "/task-package/edt/mode/disable",
            json={"scope": "bed_monitoring", "entity_ids": ["bed_1", "bed_2"], "reason": "night"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert [r["entity_id"] for r in body["results"]] == ["bed_1", "bed_2"]
        assert all(r["enabled"] is False for r in body["results"])
        assert gate.entity_states == {"bed_1": False, "bed_2": False}
        assert "bed_1" in gate.status and "bed_2" in gate.status

        history = await runtime.mode_store.get_history("bed_monitoring")
        assert [(h.entity_id, h.action.value) for h in history] == [
            ("bed_2", "disable"),
            ("bed_1", "disable"),
        ]
        assert all(h.reason == "night" for h in history)

        await _send(graph, gate, FlowMessage(payload={"bed": "bed_1"}))
        await _send(graph, gate, FlowMessage(payload={"bed": "bed_2"}))
        assert graph.operators["out"].messages == []

    async def test_unknown_entity_is_auto_created(self, runtime):
        graph, gate = await self._gate(runtime, default_enabled=True)

        await _send(graph, gate, FlowMessage(payload={"bed": "bed_3"}))
        await _send(graph, gate, FlowMessage(payload={"bed": "bed_3"}))

        out = graph.operators["out"].messages
        assert len(out) == 2
        assert out[0].extra("edt_mode")["entity_id"] == "bed_3"

        status = graph.operators["status"].messages
        assert len(status) == 1
        assert status[0].topic == "edt-mode/status/bed_monitoring"
        assert status[0].payload["action"] == "auto_create"
        assert status[0].payload["enabled"] is True

    async def test_default_disabled_gate_blocks_new_entities(self, runtime):
        graph, gate = await self._gate(runtime, default_enabled=False)

        await _send(graph, gate, FlowMessage(payload={"bed": "bed_9"}))

        assert graph.operators["out"].messages == []
        state = await runtime.mode_store.get_mode_state("bed_monitoring", "bed_9")
        assert state is not None and state.enabled is False

    async def test_control_topic_toggles(self, runtime):
        graph, gate = await self._gate(runtime)
        await runtime.mode_store.set_mode_state("bed_monitoring", "bed_1", False)

        await _send(
            graph,
            gate,
            FlowMessage(topic="edt-mode/bed_monitoring/toggle", payload={"bed": "bed_1"}),
        )

        status = graph.operators["status"].messages
        assert status[-1].payload["action"] == "toggle"
        assert status[-1].payload["enabled"] is True
        assert graph.operators["out"].messages == []
        assert (await runtime.mode_store.get_mode_state("bed_monitoring", "bed_1")).enabled
        assert gate.entity_states["bed_1"] is True

    async def test_control_topic_status(self, runtime):
        graph, gate = await self._gate(runtime)

        await _send(
            graph,
            gate,
            FlowMessage(topic="edt-mode/bed_monitoring/status", payload={"bed": "bed_4"}),
        )

        status = graph.operators["status"].messages
        assert status[0].payload["action"] == "status"
        assert status[0].payload["enabled"] is True
        assert await runtime.mode_store.get_mode_state("bed_monitoring", "bed_4") is None

    async def test_control_for_other_scope_is_ignored(self, runtime):
        graph, gate = await self._gate(runtime)

        await _send(
            graph,
            gate,
            FlowMessage(topic="edt-mode/rooms/disable", payload={"bed": "bed_1"}),
        )

        assert graph.operators["status"].messages == []
        assert await runtime.mode_store.get_scope_states("rooms") == []

    async def test_clear_scope_resets_gate_view(self, runtime, client):
        graph, gate = await self._gate(runtime)
        await client.post(
            "/task-package/edt/mode/disable",
            json={"scope": "bed_monitoring", "entity_id": "bed_1"},
        )
        assert gate.entity_states == {"bed_1": False}

        response = await client.post(
            "/task-package/edt/mode/clear", json={"scope": "bed_monitoring"}
        )

        assert response.json() == {"scope": "bed_monitoring", "removed": 1}
        assert gate.entity_states == {}
        assert gate.status == "bed_monitoring: enabled"
