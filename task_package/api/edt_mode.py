"""Mode gate routes: enable, disable, inspect and clear per-entity gates."""

import logging

from fastapi import APIRouter, Depends, Query

from task_package.api.deps import authenticate, get_runtime
from task_package.models import (
    DEFAULT_ENTITY,
    DEFAULT_SCOPE,
    BulkModeChange,
    ClearScopeRequest,
    ModeChangeRequest,
    ModeHistoryEntry,
    ModeState,
)
from task_package.runtime import TaskPackageRuntime
from task_package.services.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter()


async def _apply(
    runtime: TaskPackageRuntime,
    identity: Identity,
    request: ModeChangeRequest,
    enabled: bool,
) -> ModeState | BulkModeChange:
    updated_by = request.updated_by or identity.principal
    results = []
    for entity_id in request.targets():
        state = await runtime.mode_store.set_mode_state(
            request.scope, entity_id, enabled, reason=request.reason, updated_by=updated_by
        )
        runtime.bus.emit_mode_change(
            request.scope,
            {
                "scope": request.scope,
                "entity_id": entity_id,
                "enabled": enabled,
                "action": "enable" if enabled else "disable",
            },
        )
        results.append(state)

    if request.entity_ids:
        return BulkModeChange(count=len(results), results=results)
    return results[0]


@router.post("/enable", response_model=ModeState | BulkModeChange)
async def enable_mode(
    request: ModeChangeRequest,
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> ModeState | BulkModeChange:
    """Enable the gate for one entity, a list of entities, or the scope default."""
    return await _apply(runtime, identity, request, enabled=True)


@router.post("/disable", response_model=ModeState | BulkModeChange)
async def disable_mode(
    request: ModeChangeRequest,
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> ModeState | BulkModeChange:
    """Disable the gate for one entity, a list of entities, or the scope default."""
    return await _apply(runtime, identity, request, enabled=False)


@router.get("/status", response_model=ModeState)
async def get_mode_status(
    scope: str = Query(default=DEFAULT_SCOPE),
    entity_id: str = Query(default=DEFAULT_ENTITY),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> ModeState:
    """Current gate state, or the default if the pair has never been set."""
    return await runtime.mode_store.get_or_default(scope, entity_id)


@router.get("/scope", response_model=list[ModeState])
async def get_scope_states(
    scope: str | None = Query(default=None),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> list[ModeState]:
    """All gate rows of a scope, or of every scope when none is given."""
    if scope:
        return await runtime.mode_store.get_scope_states(scope)
    return await runtime.mode_store.get_all_states()


@router.get("/history", response_model=list[ModeHistoryEntry])
async def get_mode_history(
    scope: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> list[ModeHistoryEntry]:
    return await runtime.mode_store.get_history(scope, entity_id, limit)


@router.post("/clear")
async def clear_scope(
    request: ClearScopeRequest,
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> dict[str, object]:
    """Remove every gate row of a scope; the entities fall back to their defaults."""
    removed = await runtime.mode_store.clear_scope(
        request.scope, reason=request.reason, updated_by=request.updated_by or identity.principal
    )
    runtime.bus.emit_mode_change(request.scope, {"scope": request.scope, "action": "clear_scope"})
    return {"scope": request.scope, "removed": removed}
