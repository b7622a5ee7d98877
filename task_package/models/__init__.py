"""Pydantic models for the task package runtime."""

from task_package.models.gate import (
    DEFAULT_ENTITY,
    DEFAULT_SCOPE,
    BulkModeChange,
    ClearScopeRequest,
    ModeAction,
    ModeChangeRequest,
    ModeHistoryEntry,
    ModeState,
)
from task_package.models.task_package import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ActiveTask,
    Definition,
    DefinitionCreate,
    FlowMessage,
    Instance,
    LifecycleStatus,
    WorkflowContext,
    utc_now,
)

__all__ = [
    "ACTIVE_STATUSES",
    "DEFAULT_ENTITY",
    "DEFAULT_SCOPE",
    "TERMINAL_STATUSES",
    "ActiveTask",
    "BulkModeChange",
    "ClearScopeRequest",
    "Definition",
    "DefinitionCreate",
    "FlowMessage",
    "Instance",
    "LifecycleStatus",
    "ModeAction",
    "ModeChangeRequest",
    "ModeHistoryEntry",
    "ModeState",
    "WorkflowContext",
    "utc_now",
]
