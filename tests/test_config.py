"""Tests for environment-driven configuration."""

import logging

import pytest

from helpers import make_config
from task_package.config import TaskPackageConfig
from task_package.models import DefinitionCreate

ENV_VARS = (
    "TASK_PACKAGE_IDENTITY_URL",
    "KEYCLOAK_URL",
    "TASK_PACKAGE_DB_PATH",
    "DATABASE_PATH",
    "TASK_PACKAGE_IDENTITY_TIMEOUT",
    "TASK_PACKAGE_API_TIMEOUT",
    "TASK_PACKAGE_API_URL",
    "TASK_PACKAGE_DATA_TTL",
    "TASK_PACKAGE_SWEEP_INTERVAL",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = TaskPackageConfig.from_env()

    assert config.identity_url is None
    assert config.identity_timeout_seconds == 5.0
    assert config.api_timeout_seconds == 10.0
    assert config.database_path == "./data/task-package.db"
    assert config.log_level == "INFO"


def test_overrides(monkeypatch):
    monkeypatch.setenv("TASK_PACKAGE_IDENTITY_URL", "https://sso.example.com/realms/main")
    monkeypatch.setenv("TASK_PACKAGE_DB_PATH", "/tmp/tp.db")
    monkeypatch.setenv("TASK_PACKAGE_DATA_TTL", "60")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = TaskPackageConfig.from_env()

    assert config.identity_url == "https://sso.example.com/realms/main"
    assert config.database_path == "/tmp/tp.db"
    assert config.data_ttl_seconds == 60.0
    assert config.log_level == "DEBUG"


def test_legacy_variable_names(monkeypatch):
    monkeypatch.setenv("KEYCLOAK_URL", "https://kc.example.com/realms/ops")
    monkeypatch.setenv("DATABASE_PATH", "/var/lib/tp.db")

    config = TaskPackageConfig.from_env()

    assert config.identity_url == "https://kc.example.com/realms/ops"
    assert config.database_path == "/var/lib/tp.db"


def test_non_numeric_timeout_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("TASK_PACKAGE_IDENTITY_TIMEOUT", "soon")

    with caplog.at_level(logging.WARNING):
        config = TaskPackageConfig.from_env()

    assert config.identity_timeout_seconds == 5.0
    assert "TASK_PACKAGE_IDENTITY_TIMEOUT" in caplog.text


def test_suspicious_identity_url_warns(monkeypatch, caplog):
    monkeypatch.setenv("TASK_PACKAGE_IDENTITY_URL", "sso.example.com")

    with caplog.at_level(logging.WARNING):
        TaskPackageConfig.from_env()

    assert "does not look like an http(s) URL" in caplog.text


async def test_runtime_reconfigure_switches_store_and_identity(runtime, tmp_path):
    await runtime.task_store.upsert_definition(DefinitionCreate(id="tp01", display_name="Old"))
    new_path = str(tmp_path / "other.db")

    await runtime.reconfigure(
        make_config(new_path, identity_url="https://sso.example.com/realms/main", data_ttl_seconds=60)
    )

    assert runtime.database.db_path == new_path
    assert await runtime.task_store.list_definitions() == []
    assert runtime.identity.provider_url == "https://sso.example.com/realms/main"
    assert runtime.data_store.default_ttl == 60
