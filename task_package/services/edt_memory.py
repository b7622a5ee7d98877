"""Process-wide memories for the entity state memoriser and the filter."""

from typing import Any

from pydantic import BaseModel, Field


class FilterRecord(BaseModel):
    passed_at: float
    values: dict[str, Any] = Field(default_factory=dict)


class StateMemory:
    """Last known state per (memory name, entity)."""

    def __init__(self) -> None:
        self._states: dict[tuple[str, str], dict[str, Any]] = {}

    def get(self, memory_name: str, entity_id: str) -> dict[str, Any] | None:
        state = self._states.get((memory_name, entity_id))
        return dict(state) if state is not None else None

    def put(self, memory_name: str, entity_id: str, state: dict[str, Any]) -> None:
        self._states[(memory_name, entity_id)] = dict(state)

    def entities(self, memory_name: str) -> list[str]:
        return [entity for name, entity in self._states if name == memory_name]

    def clear(self, memory_name: str | None = None) -> None:
        if memory_name is None:
            self._states.clear()
            return
        for key in [k for k in self._states if k[0] == memory_name]:
            del self._states[key]


class FilterMemory:
    """Last pass per (filter name, entity)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], FilterRecord] = {}

    def get(self, filter_name: str, entity_id: str) -> FilterRecord | None:
        return self._records.get((filter_name, entity_id))

    def put(self, filter_name: str, entity_id: str, record: FilterRecord) -> None:
        self._records[(filter_name, entity_id)] = record

    def clear(self) -> None:
        self._records.clear()
