"""Shared request dependencies and error mapping for the HTTP routers."""

import logging

from fastapi import HTTPException, Request

from task_package.runtime import TaskPackageRuntime
from task_package.services.identity import Identity
from task_package.services.result import Err, ErrorKind

logger = logging.getLogger(__name__)


class TaskPackageHTTPError(HTTPException):
    """HTTP error rendered as ``{"error": ..., "current_status": ...}``."""

    def __init__(self, status_code: int, message: str, current_status: str | None = None) -> None:
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.current_status = current_status

    @classmethod
    def from_err(cls, err: Err) -> "TaskPackageHTTPError":
        return cls(err.http_status, err.message, err.current_status)

    def body(self) -> dict[str, str]:
        body = {"error": self.message}
        if self.current_status is not None:
            body["current_status"] = self.current_status
        return body


def get_runtime(request: Request) -> TaskPackageRuntime:
    return request.app.state.runtime


async def authenticate(request: Request) -> Identity:
    """Resolve the caller or raise 401/403/503."""
    runtime = get_runtime(request)
    result = await runtime.identity.validate(request.headers.get("Authorization"))
    if isinstance(result, Err):
        if result.kind == ErrorKind.PROVIDER_UNAVAILABLE:
            logger.warning(f"Identity check failed: {result.message}")
        raise TaskPackageHTTPError.from_err(result)
    return result.value


def require_allowed(identity: Identity, definition_id: str) -> None:
    if not identity.permits(definition_id):
        raise TaskPackageHTTPError(403, f"Not allowed to access task package {definition_id}")
