"""Database operations for definitions and instances."""

import json
from collections.abc import Iterable
from typing import Any

import aiosqlite

from task_package.db.database import Database
from task_package.models.task_package import (
    TERMINAL_STATUSES,
    Definition,
    DefinitionCreate,
    Instance,
    LifecycleStatus,
    utc_now,
)

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


def _row_to_definition(row: aiosqlite.Row) -> Definition:
    """Convert a database row to a Definition model."""
    schema = json.loads(row["payload_schema_json"]) if row["payload_schema_json"] else None
    return Definition(
        id=row["id"],
        display_name=row["display_name"],
        form_path=row["form_path"],
        payload_schema=schema,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_instance(row: aiosqlite.Row) -> Instance:
    """Convert a database row to an Instance model."""
    return Instance(
        instance_id=row["id"],
        definition_id=row["definition_id"],
        cached_display_name=row["cached_display_name"],
        principal=row["principal"],
        lifecycle_status=LifecycleStatus(row["lifecycle_status"]),
        user_status=row["user_status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class TaskStore:
    """Persistent store for definitions and instances."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # =========================================================================
    # Definitions
    # =========================================================================

    async def upsert_definition(self, definition: DefinitionCreate) -> Definition:
        """Insert a definition or refresh its display name, form path and schema."""
        now = utc_now()
        schema_json = (
            json.dumps(definition.payload_schema) if definition.payload_schema is not None else None
        )
        async with self.database.transaction() as db:
            await db.execute(
                """
                INSERT INTO definitions (id, display_name, form_path, payload_schema_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    display_name = excluded.display_name,
                    form_path = excluded.form_path,
                    payload_schema_json = excluded.payload_schema_json,
                    updated_at = excluded.updated_at
                """,
                [definition.id, definition.display_name, definition.form_path, schema_json, now, now],
            )

        result = await self.get_definition(definition.id)
        assert result is not None
        return result

    async def get_definition(self, definition_id: str) -> Definition | None:
        cursor = await self.database.connection.execute(
            "SELECT * FROM definitions WHERE id = ?",
            [definition_id],
        )
        row = await cursor.fetchone()
        return _row_to_definition(row) if row else None

    async def list_definitions(self, definition_ids: Iterable[str] | None = None) -> list[Definition]:
        """List definitions, optionally restricted to the given ids."""
        query = "SELECT * FROM definitions"
        params: list = []
        if definition_ids is not None:
            ids = list(definition_ids)
            if not ids:
                return []
            placeholders = ", ".join("?" for _ in ids)
            query += f" WHERE id IN ({placeholders})"
            params.extend(ids)
        query += " ORDER BY display_name ASC"

        cursor = await self.database.connection.execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_definition(row) for row in rows]

    # =========================================================================
    # Instances
    # =========================================================================

    async def create_instance(
        self,
        instance_id: str,
        definition: Definition,
        principal: str | None,
        payload: dict[str, Any] | None = None,
    ) -> Instance:
        """Insert a new instance in the created state."""
        now = utc_now()
        async with self.database.transaction() as db:
            await db.execute(
                """
                INSERT INTO instances (
                    id, definition_id, cached_display_name, principal,
                    lifecycle_status, payload_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    instance_id,
                    definition.id,
                    definition.display_name,
                    principal,
                    LifecycleStatus.CREATED.value,
                    json.dumps(payload or {}),
                    now,
                    now,
                ],
            )

        return Instance(
            instance_id=instance_id,
            definition_id=definition.id,
            cached_display_name=definition.display_name,
            principal=principal,
            lifecycle_status=LifecycleStatus.CREATED,
            created_at=now,
            updated_at=now,
        )

    async def get_instance(self, instance_id: str) -> Instance | None:
        cursor = await self.database.connection.execute(
            "SELECT * FROM instances WHERE id = ?",
            [instance_id],
        )
        row = await cursor.fetchone()
        return _row_to_instance(row) if row else None

    async def list_instances(
        self,
        definition_id: str | None = None,
        principal: str | None = None,
        lifecycle_status: LifecycleStatus | None = None,
        definition_ids: Iterable[str] | None = None,
    ) -> list[Instance]:
        """List instances, newest first, with optional filters."""
        conditions = []
        params: list = []

        if definition_id:
            conditions.append("definition_id = ?")
            params.append(definition_id)

        if principal:
            conditions.append("principal = ?")
            params.append(principal)

        if lifecycle_status:
            conditions.append("lifecycle_status = ?")
            params.append(lifecycle_status.value)

        if definition_ids is not None:
            ids = list(definition_ids)
            if not ids:
                return []
            conditions.append(f"definition_id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)

        where_clause = " AND ".join(conditions) if conditions else "1=1"

        cursor = await self.database.connection.execute(
            f"SELECT * FROM instances WHERE {where_clause} ORDER BY created_at DESC",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_instance(row) for row in rows]

    async def update_lifecycle_status(
        self,
        instance_id: str,
        status: LifecycleStatus,
        expected: LifecycleStatus | None = None,
    ) -> bool:
        """Set the lifecycle status of a non-terminal instance.

        Args:
            instance_id: Instance to update
            status: New lifecycle status
            expected: If given, only update when the current status matches

        Returns:
            True if a row was updated. Terminal rows are never overwritten.
        """
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        query = f"""
            UPDATE instances SET lifecycle_status = ?, updated_at = ?
            WHERE id = ? AND lifecycle_status NOT IN ({placeholders})
        """
        params: list = [status.value, utc_now(), instance_id, *_TERMINAL_VALUES]
        if expected is not None:
            query += " AND lifecycle_status = ?"
            params.append(expected.value)

        async with self.database.transaction() as db:
            cursor = await db.execute(query, params)
            return cursor.rowcount > 0

    async def update_user_status(self, instance_id: str, user_status: str) -> bool:
        """Set the free-form user status. Returns False if the instance is unknown."""
        async with self.database.transaction() as db:
            cursor = await db.execute(
                "UPDATE instances SET user_status = ?, updated_at = ? WHERE id = ?",
                [user_status, utc_now(), instance_id],
            )
            return cursor.rowcount > 0
