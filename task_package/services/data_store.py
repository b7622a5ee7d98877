"""In-memory payload store with per-entry TTL."""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from task_package.models.task_package import LifecycleStatus

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0


class DataEntry(BaseModel):
    payload: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    stored_at: float
    expires_at: float


class DataStore:
    """Keyed payload store; expired entries are removed lazily and by sweeps."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: dict[str, DataEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def set(
        self,
        key: str,
        payload: Any,
        metadata: dict[str, Any] | None = None,
        ttl: float | None = None,
    ) -> DataEntry:
        now = self.clock()
        entry = DataEntry(
            payload=payload,
            metadata=metadata or {},
            stored_at=now,
            expires_at=now + (ttl if ttl is not None else self.default_ttl),
        )
        self._entries[key] = entry
        return entry

    def get(self, key: str) -> DataEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            del self._entries[key]
            logger.debug(f"Data entry {key} expired")
            return None
        return entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def extend(self, key: str, ttl: float | None = None) -> bool:
        """Push an entry's expiry to ``ttl`` seconds from now."""
        entry = self.get(key)
        if entry is None:
            return False
        entry.expires_at = self.clock() + (ttl if ttl is not None else self.default_ttl)
        return True

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def handle_complete(self, topic: str, payload: dict[str, Any]) -> None:
        """Keep a finished instance's data around for another full TTL."""
        instance_id = payload.get("instance_id")
        status = payload.get("lifecycle_status")
        if not instance_id or status not in (
            LifecycleStatus.COMPLETED.value,
            LifecycleStatus.CANCELLED.value,
        ):
            return
        if self.extend(instance_id):
            logger.debug(f"Extended data TTL for finished instance {instance_id}")

    async def sweep_periodically(self, interval: float) -> None:
        """Background task that removes expired entries every ``interval`` seconds."""
        while True:
            try:
                removed = self.cleanup_expired()
                if removed > 0:
                    logger.info(f"Data sweep removed {removed} expired entries")
            except Exception as e:
                logger.exception(f"Error in data sweep: {e}")

            await asyncio.sleep(interval)
