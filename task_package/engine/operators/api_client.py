"""Operators that call the control-plane HTTP API from inside a graph."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

import httpx

from task_package.engine.operators.base import Operator, OperatorConfig
from task_package.models.task_package import FlowMessage

logger = logging.getLogger(__name__)

SUCCESS = 0
FAILURE = 1


class ApiClientConfig(OperatorConfig):
    api_url: str | None = None
    definition_id: str | None = None
    auth_token: str | None = None
    timeout_seconds: float | None = None


class ApiClientOperator(Operator):
    """Base for operators that POST to the control plane.

    The bearer token comes from the message's ``access_token`` field or the
    configured ``auth_token``. The response body is attached as
    ``api_result`` on the success output; failures go to the second output
    with an ``error`` field.
    """

    outputs: ClassVar[int] = 2
    config_model: ClassVar[type[OperatorConfig]] = ApiClientConfig
    path: ClassVar[str] = ""

    def build_body(self, message: FlowMessage) -> dict[str, Any]:
        raise NotImplementedError

    def _definition_id(self, message: FlowMessage) -> str | None:
        if message.extra("definition_id"):
            return message.extra("definition_id")
        if message.workflow_context is not None:
            return message.workflow_context.definition_id
        return self.config.definition_id

    def _instance_id(self, message: FlowMessage) -> str | None:
        return message.extra("instance_id") or message.instance_id

    async def handle(self, message: FlowMessage) -> None:
        try:
            body = self.build_body(message)
        except ValueError as e:
            self.emit(message.evolve(error=str(e)), FAILURE)
            return

        base_url = (self.config.api_url or self.runtime.config.api_base_url).rstrip("/")
        timeout = self.config.timeout_seconds or self.runtime.config.api_timeout_seconds
        headers = {}
        token = message.extra("access_token") or self.config.auth_token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(
                timeout=timeout, transport=self.runtime.api_transport
            ) as client:
                response = await client.post(f"{base_url}{self.path}", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Operator {self.operator_id}: POST {self.path} failed: {e}")
            self.set_status("request failed")
            self.emit(message.evolve(error=str(e)), FAILURE)
            return

        try:
            result = response.json()
        except ValueError:
            result = {"body": response.text}

        if response.status_code >= 400:
            error = result.get("error") if isinstance(result, dict) else None
            logger.warning(f"Operator {self.operator_id}: POST {self.path} returned {response.status_code}")
            self.set_status(f"HTTP {response.status_code}")
            self.emit(
                message.evolve(
                    error=error or f"HTTP {response.status_code}",
                    status_code=response.status_code,
                    api_result=result,
                ),
                FAILURE,
            )
            return

        self.set_status("ok")
        self.emit(message.evolve(api_result=result, status_code=response.status_code), SUCCESS)


class StartApiOperator(ApiClientOperator):
    """Starts a new instance; the payload dict becomes the start body."""

    type_name: ClassVar[str] = "start-api"
    path: ClassVar[str] = "/start"

    def _definition_id(self, message: FlowMessage) -> str | None:
        return message.extra("definition_id") or self.config.definition_id

    def build_body(self, message: FlowMessage) -> dict[str, Any]:
        definition_id = self._definition_id(message)
        if not definition_id:
            raise ValueError("definition_id is required")
        body = dict(message.payload) if isinstance(message.payload, dict) else {}
        body["definition_id"] = definition_id
        return body


class UpdateApiOperator(ApiClientOperator):
    type_name: ClassVar[str] = "update-api"
    path: ClassVar[str] = "/update"

    def build_body(self, message: FlowMessage) -> dict[str, Any]:
        instance_id = self._instance_id(message)
        definition_id = None if instance_id else self._definition_id(message)
        if not instance_id and not definition_id:
            raise ValueError("instance_id or definition_id is required")
        body = dict(message.payload) if isinstance(message.payload, dict) else {"update": message.payload}
        if instance_id:
            body["instance_id"] = instance_id
        if definition_id:
            body["definition_id"] = definition_id
        return body


class CancelApiOperator(ApiClientOperator):
    type_name: ClassVar[str] = "cancel-api"
    path: ClassVar[str] = "/cancel"

    def build_body(self, message: FlowMessage) -> dict[str, Any]:
        instance_id = self._instance_id(message)
        definition_id = self._definition_id(message)
        if not instance_id or not definition_id:
            raise ValueError("definition_id and instance_id are required")
        return {"definition_id": definition_id, "instance_id": instance_id}
