"""Database operations for per-entity mode gates and their history."""

import logging

import aiosqlite

from task_package.db.database import Database
from task_package.models.gate import ModeAction, ModeHistoryEntry, ModeState
from task_package.models.task_package import utc_now

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Default state"
DEFAULT_UPDATED_BY = "system"

# Entity recorded in history when a whole scope is cleared
ALL_ENTITIES = "ALL"


def _row_to_state(row: aiosqlite.Row) -> ModeState:
    return ModeState(
        scope=row["scope"],
        entity_id=row["entity_id"],
        enabled=bool(row["enabled"]),
        reason=row["reason"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_history(row: aiosqlite.Row) -> ModeHistoryEntry:
    return ModeHistoryEntry(
        id=row["id"],
        scope=row["scope"],
        entity_id=row["entity_id"],
        action=ModeAction(row["action"]),
        enabled=bool(row["enabled"]),
        reason=row["reason"],
        updated_by=row["updated_by"],
        timestamp=row["timestamp"],
    )


def default_state(scope: str, entity_id: str, enabled: bool = True) -> ModeState:
    """State reported for a pair that has no row yet."""
    return ModeState(
        scope=scope,
        entity_id=entity_id,
        enabled=enabled,
        reason=DEFAULT_REASON,
        updated_by=DEFAULT_UPDATED_BY,
        is_default=True,
    )


async def _append_history(
    db: aiosqlite.Connection,
    scope: str,
    entity_id: str,
    action: ModeAction,
    enabled: bool,
    reason: str | None,
    updated_by: str | None,
    timestamp: str,
) -> None:
    await db.execute(
        """
        INSERT INTO gate_history (scope, entity_id, action, enabled, reason, updated_by, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [scope, entity_id, action.value, int(enabled), reason, updated_by, timestamp],
    )


class ModeStore:
    """Persistent (scope, entity) gate rows with an append-only history."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def get_mode_state(self, scope: str, entity_id: str) -> ModeState | None:
        cursor = await self.database.connection.execute(
            "SELECT * FROM gate_rows WHERE scope = ? AND entity_id = ?",
            [scope, entity_id],
        )
        row = await cursor.fetchone()
        return _row_to_state(row) if row else None

    async def get_or_default(self, scope: str, entity_id: str) -> ModeState:
        state = await self.get_mode_state(scope, entity_id)
        return state if state is not None else default_state(scope, entity_id)

    async def set_mode_state(
        self,
        scope: str,
        entity_id: str,
        enabled: bool,
        reason: str | None = None,
        updated_by: str | None = None,
    ) -> ModeState:
        """Upsert a gate row and record the change in history.

        Both writes commit together or not at all.
        """
        now = utc_now()
        updated_by = updated_by or DEFAULT_UPDATED_BY
        action = ModeAction.ENABLE if enabled else ModeAction.DISABLE

        async with self.database.transaction() as db:
            await db.execute(
                """
                INSERT INTO gate_rows (scope, entity_id, enabled, reason, updated_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope, entity_id) DO UPDATE SET
                    enabled = excluded.enabled,
                    reason = excluded.reason,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                [scope, entity_id, int(enabled), reason, updated_by, now, now],
            )
            await _append_history(db, scope, entity_id, action, enabled, reason, updated_by, now)

        logger.info(f"Gate {scope}/{entity_id} {action.value}d by {updated_by}")
        state = await self.get_mode_state(scope, entity_id)
        assert state is not None
        return state

    async def ensure_mode_state(
        self,
        scope: str,
        entity_id: str,
        default_enabled: bool = True,
    ) -> tuple[ModeState, bool]:
        """Return the row for a pair, creating it at ``default_enabled`` if absent.

        Returns:
            The state and whether this call created it. Concurrent callers
            for the same pair see exactly one creation.
        """
        now = utc_now()
        async with self.database.transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO gate_rows (scope, entity_id, enabled, reason, updated_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope, entity_id) DO NOTHING
                """,
                [scope, entity_id, int(default_enabled), DEFAULT_REASON, DEFAULT_UPDATED_BY, now, now],
            )
            created = cursor.rowcount > 0

        if created:
            logger.info(f"Gate {scope}/{entity_id} auto-created (enabled={default_enabled})")

        state = await self.get_mode_state(scope, entity_id)
        assert state is not None
        return state, created

    async def get_scope_states(self, scope: str) -> list[ModeState]:
        cursor = await self.database.connection.execute(
            "SELECT * FROM gate_rows WHERE scope = ? ORDER BY entity_id ASC",
            [scope],
        )
        rows = await cursor.fetchall()
        return [_row_to_state(row) for row in rows]

    async def get_all_states(self) -> list[ModeState]:
        cursor = await self.database.connection.execute(
            "SELECT * FROM gate_rows ORDER BY scope ASC, entity_id ASC"
        )
        rows = await cursor.fetchall()
        return [_row_to_state(row) for row in rows]

    async def clear_scope(
        self,
        scope: str,
        reason: str | None = None,
        updated_by: str | None = None,
    ) -> int:
        """Delete every row in a scope. Returns the number of rows removed."""
        now = utc_now()
        async with self.database.transaction() as db:
            cursor = await db.execute("DELETE FROM gate_rows WHERE scope = ?", [scope])
            removed = cursor.rowcount
            await _append_history(
                db,
                scope,
                ALL_ENTITIES,
                ModeAction.CLEAR_SCOPE,
                False,
                reason,
                updated_by or DEFAULT_UPDATED_BY,
                now,
            )

        logger.info(f"Cleared {removed} gate row(s) in scope {scope}")
        return removed

    async def get_history(
        self,
        scope: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[ModeHistoryEntry]:
        """History entries, newest first."""
        conditions = []
        params: list = []

        if scope:
            conditions.append("scope = ?")
            params.append(scope)

        if entity_id:
            conditions.append("entity_id = ?")
            params.append(entity_id)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        cursor = await self.database.connection.execute(
            f"SELECT * FROM gate_history WHERE {where_clause} ORDER BY id DESC LIMIT ?",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_history(row) for row in rows]
