"""Runtime configuration loaded from environment variables."""

import logging
import os

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value for {name}: {raw!r}")
        return default


class TaskPackageConfig(BaseModel):
    """Settings shared by the control plane, stores and operators."""

    identity_url: str | None = None
    database_path: str = "./data/task-package.db"
    identity_timeout_seconds: float = Field(default=5.0, gt=0)
    api_timeout_seconds: float = Field(default=10.0, gt=0)
    api_base_url: str = "http://localhost:1880/task-package"
    data_ttl_seconds: float = Field(default=3600.0, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "TaskPackageConfig":
        """Build a config from TASK_PACKAGE_* variables, with legacy fallbacks."""
        identity_url = os.getenv("TASK_PACKAGE_IDENTITY_URL") or os.getenv("KEYCLOAK_URL")
        config = cls(
            identity_url=identity_url or None,
            database_path=(
                os.getenv("TASK_PACKAGE_DB_PATH")
                or os.getenv("DATABASE_PATH")
                or cls.model_fields["database_path"].default
            ),
            identity_timeout_seconds=_env_float("TASK_PACKAGE_IDENTITY_TIMEOUT", 5.0),
            api_timeout_seconds=_env_float("TASK_PACKAGE_API_TIMEOUT", 10.0),
            api_base_url=os.getenv("TASK_PACKAGE_API_URL", cls.model_fields["api_base_url"].default),
            data_ttl_seconds=_env_float("TASK_PACKAGE_DATA_TTL", 3600.0),
            sweep_interval_seconds=_env_float("TASK_PACKAGE_SWEEP_INTERVAL", 300.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        config.check()
        return config

    def check(self) -> None:
        """Log problems that do not prevent startup."""
        if self.identity_url and not self.identity_url.startswith(("http://", "https://")):
            logger.warning(
                f"Identity provider URL does not look like an http(s) URL: {self.identity_url}"
            )
        if not self.identity_url:
            logger.info("No identity provider configured; requests run as 'admin'")
