"""
MigrationAuditRepository - Append-only access to the migration_audit table.

Entries are written once and never updated. Reads return the newest entries
first, optionally filtered by migration phase.
"""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from usermigration.models import MigrationAuditEntry
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_LEGACY_TABLE,
    ATTR_MIGRATION_PHASE,
)
from usermigration.repositories._connection import (
    bind_timestamp,
    dialect_name,
    execute_with_connection,
    parse_timestamp,
)
from usermigration.repositories._memory import InMemoryState, UndoLog, record_undo


@runtime_checkable
class MigrationAuditRepository(Protocol):
    """Protocol for migration audit persistence."""

    async def record(self, entry: MigrationAuditEntry) -> None:
        """Append an entry."""
        ...

    async def list_entries(
        self,
        limit: int = 100,
        phase: str | None = None,
    ) -> list[MigrationAuditEntry]:
        """Newest entries first."""
        ...


class SQLMigrationAuditRepository:
    """
    SQLAlchemy implementation of MigrationAuditRepository.

    ``new_values`` is stored as JSON text.

    Args:
        conn: Database connection or engine
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._db_system = dialect_name(conn)

    async def record(self, entry: MigrationAuditEntry) -> None:
        with self._tracer.span(
            "usermigration.audit_repo.record",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "INSERT",
                ATTR_LEGACY_TABLE: entry.table_name,
                ATTR_MIGRATION_PHASE: entry.migration_phase,
            },
        ):
            query = text(
                """
                INSERT INTO migration_audit (
                    table_name, operation, record_id, new_values,
                    migration_phase, created_at
                ) VALUES (
                    :table_name, :operation, :record_id, :new_values,
                    :migration_phase, :created_at
                )
                """
            )
            params = {
                "table_name": entry.table_name,
                "operation": entry.operation,
                "record_id": entry.record_id,
                "new_values": json.dumps(entry.new_values, default=str),
                "migration_phase": entry.migration_phase,
                "created_at": bind_timestamp(self._conn, entry.created_at),
            }
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def list_entries(
        self,
        limit: int = 100,
        phase: str | None = None,
    ) -> list[MigrationAuditEntry]:
        with self._tracer.span(
            "usermigration.audit_repo.list_entries",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: "SELECT"},
        ):
            conditions = ""
            params: dict[str, Any] = {"limit": limit}
            if phase is not None:
                conditions = "WHERE migration_phase = :phase"
                params["phase"] = phase

            query = text(
                f"""
                SELECT id, table_name, operation, record_id, new_values,
                       migration_phase, created_at
                FROM migration_audit
                {conditions}
                ORDER BY created_at DESC, id DESC
                LIMIT :limit
                """
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
            return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: Any) -> MigrationAuditEntry:
        new_values = row[4]
        if isinstance(new_values, str):
            new_values = json.loads(new_values)
        return MigrationAuditEntry(
            id=row[0],
            table_name=row[1],
            operation=row[2],
            record_id=row[3],
            new_values=new_values or {},
            migration_phase=row[5],
            created_at=parse_timestamp(row[6]),
        )


class InMemoryMigrationAuditRepository:
    """In-memory implementation of MigrationAuditRepository."""

    def __init__(self, state: InMemoryState, undo_log: UndoLog | None = None) -> None:
        self._state = state
        self._undo_log = undo_log

    async def record(self, entry: MigrationAuditEntry) -> None:
        self._state.raise_injected(f"audit:{entry.table_name}:{entry.record_id}")
        stored = MigrationAuditEntry(
            id=self._state.allocate_audit_id(),
            table_name=entry.table_name,
            operation=entry.operation,
            record_id=entry.record_id,
            new_values=dict(entry.new_values),
            migration_phase=entry.migration_phase,
            created_at=entry.created_at,
        )
        self._state.audit.append(stored)
        record_undo(self._undo_log, lambda: self._state.audit.remove(stored))

    async def list_entries(
        self,
        limit: int = 100,
        phase: str | None = None,
    ) -> list[MigrationAuditEntry]:
        entries = [e for e in self._state.audit if phase is None or e.migration_phase == phase]
        entries.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
        return entries[:limit]


__all__ = [
    "MigrationAuditRepository",
    "SQLMigrationAuditRepository",
    "InMemoryMigrationAuditRepository",
]
