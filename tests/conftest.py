"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from helpers import Collector, make_config
from task_package.main import create_app
from task_package.runtime import TaskPackageRuntime


@pytest.fixture
def db_path():
    """Temporary database file for one test."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name

    yield path

    # Clean up
    for suffix in ("", "-journal"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
async def runtime(db_path) -> AsyncGenerator[TaskPackageRuntime, None]:
    """A started runtime without an identity provider."""
    runtime = TaskPackageRuntime(make_config(db_path))
    runtime.operators.register(Collector)
    await runtime.startup()

    yield runtime

    await runtime.shutdown()


@pytest.fixture
async def client(runtime) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    app = create_app(runtime=runtime)
    async with AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://test",
    ) as client:
        yield client
