"""Task package control-plane routes: start, cancel, status, info and update."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from task_package.api.deps import (
    TaskPackageHTTPError,
    authenticate,
    get_runtime,
    require_allowed,
)
from task_package.models import Definition, Instance, LifecycleStatus
from task_package.runtime import TaskPackageRuntime
from task_package.services.identity import Identity
from task_package.services.result import Err

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================


class StartResponse(BaseModel):
    instance_id: str
    status: LifecycleStatus = LifecycleStatus.CREATED


class CancelResponse(BaseModel):
    status: LifecycleStatus = LifecycleStatus.CANCELLING
    message: str | None = None


class UpdateResponse(BaseModel):
    status: str = "updated"
    instance_id: str | None = None
    definition_id: str | None = None


def _require_str(body: dict[str, Any], *names: str) -> list[str]:
    values = [body.get(name) for name in names]
    if not all(isinstance(v, str) and v for v in values):
        raise TaskPackageHTTPError(400, f"{' and '.join(names)} {'are' if len(names) > 1 else 'is'} required")
    return values


# =============================================================================
# Routes
# =============================================================================


@router.post("/start", response_model=StartResponse)
async def start_task_package(
    body: dict[str, Any] | None = Body(default=None),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> StartResponse:
    """Create a new instance of a definition."""
    body = body or {}
    (definition_id,) = _require_str(body, "definition_id")
    require_allowed(identity, definition_id)

    definition = await runtime.task_store.get_definition(definition_id)
    if definition is None:
        raise TaskPackageHTTPError(404, f"Task package {definition_id} not found")

    payload = {k: v for k, v in body.items() if k != "definition_id"}
    result = await runtime.registry.start(definition, identity.principal, payload)
    if isinstance(result, Err):
        raise TaskPackageHTTPError.from_err(result)

    return StartResponse(instance_id=result.value.instance_id)


@router.post("/cancel", response_model=CancelResponse, response_model_exclude_none=True)
async def cancel_task_package(
    body: dict[str, Any] | None = Body(default=None),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> CancelResponse:
    """Request cancellation of a running instance."""
    body = body or {}
    definition_id, instance_id = _require_str(body, "definition_id", "instance_id")
    require_allowed(identity, definition_id)

    payload = {k: v for k, v in body.items() if k not in ("definition_id", "instance_id")}
    result = await runtime.registry.cancel(definition_id, instance_id, identity.principal, payload)
    if isinstance(result, Err):
        raise TaskPackageHTTPError.from_err(result)

    if result.value.already_cancelling:
        return CancelResponse(message="Task is already being cancelled")
    return CancelResponse()


@router.get("/status", response_model=Instance | list[Instance])
async def get_status(
    instance_id: str | None = Query(default=None),
    definition_id: str | None = Query(default=None),
    principal: str | None = Query(default=None),
    lifecycle_status: str | None = Query(default=None),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> Instance | list[Instance]:
    """Get one instance by id, or list instances matching the filters."""
    if instance_id:
        instance = await runtime.registry.get(instance_id)
        # Instances outside the allow-list are filtered, not denied
        if instance is None or not identity.permits(instance.definition_id):
            raise TaskPackageHTTPError(404, f"Instance {instance_id} not found")
        return instance

    status = None
    if lifecycle_status:
        try:
            status = LifecycleStatus(lifecycle_status)
        except ValueError:
            raise TaskPackageHTTPError(400, f"Unknown lifecycle_status {lifecycle_status}") from None

    return await runtime.registry.list_instances(
        definition_id=definition_id,
        principal=principal,
        lifecycle_status=status,
        definition_ids=identity.allow_list or None,
    )


@router.get("/info", response_model=Definition | list[Definition])
@router.get("/", response_model=Definition | list[Definition], include_in_schema=False)
async def get_info(
    definition_id: str | None = Query(default=None),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> Definition | list[Definition]:
    """Get one definition, or list the definitions visible to the caller."""
    if definition_id:
        definition = await runtime.task_store.get_definition(definition_id)
        if definition is None:
            raise TaskPackageHTTPError(404, f"Task package {definition_id} not found")
        require_allowed(identity, definition_id)
        return definition

    return await runtime.task_store.list_definitions(identity.allow_list or None)


@router.post("/update", response_model=UpdateResponse, response_model_exclude_none=True)
async def update_task_package(
    body: dict[str, Any] | None = Body(default=None),
    identity: Identity = Depends(authenticate),
    runtime: TaskPackageRuntime = Depends(get_runtime),
) -> UpdateResponse:
    """Publish an update to one instance or to every instance of a definition."""
    body = body or {}
    instance_id = body.get("instance_id") or None
    definition_id = body.get("definition_id") or None
    fields = {k: v for k, v in body.items() if k not in ("instance_id", "definition_id")}

    result = await runtime.registry.update(fields, instance_id=instance_id, definition_id=definition_id)
    if isinstance(result, Err):
        raise TaskPackageHTTPError.from_err(result)

    logger.info(f"Update published by {identity.principal} for {instance_id or definition_id}")
    return UpdateResponse(**result.value)
