"""SQLite database connection and schema initialization."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)


class Database:
    """Owns the single aiosqlite connection shared by the stores.

    Writes go through ``transaction()``, which serializes writers so that
    multi-statement updates commit or roll back as a unit.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the connection and create the schema."""
        if self._connection is not None:
            return

        # Ensure the data directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys
        await self._connection.execute("PRAGMA foreign_keys = ON")

        await _create_schema(self._connection)
        logger.info(f"Opened database at {self.db_path}")

    async def close(self) -> None:
        """Close the connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info(f"Closed database at {self.db_path}")

    async def reopen(self, db_path: str) -> None:
        """Close the current connection and open ``db_path`` instead."""
        async with self._write_lock:
            await self.close()
            self.db_path = db_path
        await self.connect()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run writes in a serialized transaction."""
        async with self._write_lock:
            db = self.connection
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            else:
                await db.commit()


async def _create_schema(db: aiosqlite.Connection) -> None:
    """Create database tables and indexes."""
    # Task package definitions table
    await db.execute("""
        CREATE TABLE IF NOT EXISTS definitions (
            id TEXT PRIMARY KEY,
            display_name TEXT NOT NULL,
            form_path TEXT,
            payload_schema_json TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)

    # Instances table
    await db.execute("""
        CREATE TABLE IF NOT EXISTS instances (
            id TEXT PRIMARY KEY,
            definition_id TEXT NOT NULL,
            cached_display_name TEXT NOT NULL,
            principal TEXT,
            lifecycle_status TEXT NOT NULL DEFAULT 'created',
            user_status TEXT,
            payload_json TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (definition_id) REFERENCES definitions(id)
        )
    """)

    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_instances_definition ON instances(definition_id, lifecycle_status)"
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_instances_principal ON instances(principal)")

    # Mode gate rows, one per (scope, entity)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS gate_rows (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scope TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            reason TEXT,
            updated_by TEXT NOT NULL DEFAULT 'system',
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE(scope, entity_id)
        )
    """)

    # Append-only history of gate mutations
    await db.execute("""
        CREATE TABLE IF NOT EXISTS gate_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scope TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            enabled INTEGER NOT NULL,
            reason TEXT,
            updated_by TEXT,
            timestamp TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)

    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_gate_history_scope ON gate_history(scope, entity_id)"
    )

    await db.commit()
