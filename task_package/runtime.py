"""Composition root holding every long-lived object of a task package process."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from task_package.config import TaskPackageConfig
from task_package.db.database import Database
from task_package.db.mode_store import ModeStore
from task_package.db.task_store import TaskStore
from task_package.engine.graph import Graph, GraphDirectory, GraphSpec
from task_package.engine.registry import OperatorRegistry, register_builtin_operators
from task_package.services.data_store import DataStore
from task_package.services.edt_memory import FilterMemory, StateMemory
from task_package.services.event_bus import EventBus
from task_package.services.identity import IdentityGate
from task_package.services.instance_registry import InstanceRegistry

logger = logging.getLogger(__name__)


class TaskPackageRuntime:
    """Owns the stores, the event bus, the registry and the deployed graphs.

    One runtime backs one HTTP app; tests create as many as they like.

    Args:
        config: Process configuration
        identity_transport: Optional httpx transport for identity provider calls
        api_transport: Optional httpx transport for operators calling the HTTP API
    """

    def __init__(
        self,
        config: TaskPackageConfig,
        identity_transport: httpx.AsyncBaseTransport | None = None,
        api_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.identity_transport = identity_transport
        self.api_transport = api_transport

        self.database = Database(config.database_path)
        self.task_store = TaskStore(self.database)
        self.mode_store = ModeStore(self.database)
        self.bus = EventBus()
        self.graphs = GraphDirectory()
        self.registry = InstanceRegistry(self.task_store, self.bus, self.graphs)
        self.identity = self._build_identity(config)
        self.data_store = DataStore(default_ttl=config.data_ttl_seconds)
        self.state_memory = StateMemory()
        self.filter_memory = FilterMemory()
        self.operators = register_builtin_operators(OperatorRegistry())

        self._sweep_task: asyncio.Task | None = None
        self._started = False

    def _build_identity(self, config: TaskPackageConfig) -> IdentityGate:
        return IdentityGate(
            config.identity_url,
            timeout=config.identity_timeout_seconds,
            transport=self.identity_transport,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self) -> None:
        if self._started:
            return
        await self.database.connect()
        self.bus.on_complete("*", self.data_store.handle_complete)
        self._sweep_task = asyncio.create_task(
            self.data_store.sweep_periodically(self.config.sweep_interval_seconds)
        )
        self._started = True
        logger.info("Task package runtime started")

    async def shutdown(self) -> None:
        if not self._started:
            return
        for graph in self.graphs:
            await self.undeploy(graph.graph_id)

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.bus.close()
        await self.database.close()
        self._started = False
        logger.info("Task package runtime stopped")

    async def reconfigure(self, config: TaskPackageConfig) -> None:
        """Apply a new configuration: reopen the store and rebuild the identity gate."""
        if config.database_path != self.config.database_path:
            await self.database.reopen(config.database_path)
        self.identity = self._build_identity(config)
        self.data_store.default_ttl = config.data_ttl_seconds
        self.config = config
        logger.info("Task package runtime reconfigured")

    async def deploy(self, spec: GraphSpec | dict[str, Any]) -> Graph:
        """Build, start and register a graph."""
        if isinstance(spec, dict):
            spec = GraphSpec.model_validate(spec)
        if self.graphs.get(spec.id) is not None:
            raise ValueError(f"Graph {spec.id} is already deployed")

        graph = self.operators.build(spec, self)
        self.graphs.add(graph)
        try:
            await graph.deploy()
        except Exception:
            self.graphs.remove(spec.id)
            await graph.close()
            raise
        return graph

    async def undeploy(self, graph_id: str) -> None:
        graph = self.graphs.remove(graph_id)
        if graph is not None:
            await graph.close()
