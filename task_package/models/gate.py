"""Pydantic models for per-entity mode gates."""

from enum import Enum

from pydantic import BaseModel

DEFAULT_SCOPE = "default"
DEFAULT_ENTITY = "default"


class ModeAction(str, Enum):
    """Actions recorded in the gate history."""

    ENABLE = "enable"
    DISABLE = "disable"
    CLEAR_SCOPE = "clear_scope"


class ModeState(BaseModel):
    """Enabled/disabled state of one (scope, entity) pair."""

    scope: str
    entity_id: str
    enabled: bool
    reason: str | None = None
    updated_by: str = "system"
    created_at: str | None = None
    updated_at: str | None = None
    is_default: bool = False


class ModeHistoryEntry(BaseModel):
    id: int
    scope: str
    entity_id: str
    action: ModeAction
    enabled: bool
    reason: str | None = None
    updated_by: str | None = None
    timestamp: str


class ModeChangeRequest(BaseModel):
    """Body of an enable/disable request.

    Either a single entity_id or a list of entity_ids may be given. With
    neither, the scope-level default entity is changed.
    """

    scope: str = DEFAULT_SCOPE
    entity_id: str | None = None
    entity_ids: list[str] | None = None
    reason: str | None = None
    updated_by: str | None = None

    def targets(self) -> list[str]:
        if self.entity_ids:
            return list(self.entity_ids)
        return [self.entity_id or DEFAULT_ENTITY]


class BulkModeChange(BaseModel):
    count: int
    results: list[ModeState]


class ClearScopeRequest(BaseModel):
    scope: str = DEFAULT_SCOPE
    reason: str | None = None
    updated_by: str | None = None
