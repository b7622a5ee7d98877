"""Pydantic models for task package definitions, instances and flow messages.

A *definition* is a deployable kind of task package. An *instance* is one
run of a definition, tracked through its lifecycle status. Messages flowing
between graph operators carry a workflow context describing the instance
they belong to.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


# =============================================================================
# Enums
# =============================================================================


class LifecycleStatus(str, Enum):
    """System-owned status of an instance."""

    CREATED = "created"
    STARTED = "started"
    ONGOING = "ongoing"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset(
    {LifecycleStatus.COMPLETED, LifecycleStatus.CANCELLED, LifecycleStatus.FAILED}
)

ACTIVE_STATUSES = frozenset(
    {LifecycleStatus.CREATED, LifecycleStatus.STARTED, LifecycleStatus.ONGOING}
)


# =============================================================================
# Definitions and instances
# =============================================================================


class DefinitionCreate(BaseModel):
    """Definition as declared by an entry operator on deploy."""

    id: str
    display_name: str
    form_path: str | None = None
    payload_schema: dict[str, Any] | None = None


class Definition(DefinitionCreate):
    """Persisted definition."""

    created_at: str
    updated_at: str


class Instance(BaseModel):
    """Persisted instance row."""

    instance_id: str
    definition_id: str
    cached_display_name: str
    principal: str | None = None
    lifecycle_status: LifecycleStatus
    user_status: str | None = None
    created_at: str
    updated_at: str
    orphaned: bool = False


class WorkflowContext(BaseModel):
    """Instance snapshot carried by every message inside a running graph."""

    instance_id: str
    definition_id: str
    cached_display_name: str
    lifecycle_status: LifecycleStatus
    user_status: str | None = None
    principal: str | None = None
    created_at: str
    updated_at: str


class ActiveTask(BaseModel):
    """Descriptor an entry operator registers in its graph context."""

    instance_id: str
    definition_id: str
    cached_display_name: str
    principal: str | None = None
    created_at: str
    cancelled: bool = False
    cancelled_at: str | None = None

    def to_context(self, status: LifecycleStatus) -> WorkflowContext:
        return WorkflowContext(
            instance_id=self.instance_id,
            definition_id=self.definition_id,
            cached_display_name=self.cached_display_name,
            lifecycle_status=status,
            principal=self.principal,
            created_at=self.created_at,
            updated_at=utc_now(),
        )


# =============================================================================
# Flow messages
# =============================================================================


class FlowMessage(BaseModel):
    """Envelope passed between operators.

    Operators may attach arbitrary extra fields; they are kept as pydantic
    extras and survive copies. The cleanup flag marks messages that only
    exist to run cleanup after a cancellation or a failure.
    """

    workflow_context: WorkflowContext | None = None
    payload: Any = None
    topic: str | None = None
    cleanup: bool = Field(default=False, alias="_cleanup")
    cleanup_reason: str | None = Field(default=None, alias="_cleanup_reason")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @property
    def is_cleanup(self) -> bool:
        return self.cleanup or self.cleanup_reason is not None

    @property
    def instance_id(self) -> str | None:
        if self.workflow_context is None:
            return None
        return self.workflow_context.instance_id

    def extra(self, name: str, default: Any = None) -> Any:
        """Read an operator-attached field."""
        return (self.model_extra or {}).get(name, default)

    def evolve(self, **fields: Any) -> "FlowMessage":
        """Return a deep copy with the given fields replaced or added."""
        return self.model_copy(update=fields, deep=True)

    def as_cleanup(self, reason: str = "cancelled") -> "FlowMessage":
        """Return a copy marked as a cleanup message."""
        return self.evolve(
            cleanup=True,
            cleanup_reason=reason,
            topic=self.topic or f"cleanup-{reason}",
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
