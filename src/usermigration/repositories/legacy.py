"""
LegacyRecordRepository - Data access for the four legacy identity tables.

Table and column names come from the ``LegacyTable`` descriptions in
``usermigration.legacy``, never from user input.

Usage:
    >>> repo = SQLLegacyRecordRepository(conn)
    >>> for record in await repo.find_unlinked(BUYERS):
    ...     await repo.link(BUYERS, record.id, user.id)
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from usermigration.legacy import LegacyTable
from usermigration.models import LegacyRecord
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_LEGACY_TABLE,
    ATTR_RECORD_ID,
)
from usermigration.repositories._connection import dialect_name, execute_with_connection
from usermigration.repositories._memory import InMemoryState, UndoLog, record_undo


@runtime_checkable
class LegacyRecordRepository(Protocol):
    """Protocol for reading and linking legacy identity rows."""

    async def find_unlinked(self, table: LegacyTable) -> list[LegacyRecord]:
        """Rows whose user_id is null, ordered by id."""
        ...

    async def link(self, table: LegacyTable, record_id: int, user_id: int) -> bool:
        """
        Set user_id on an unlinked row.

        Returns:
            False if the row was already linked (nothing changed).
        """
        ...

    async def relink(self, table: LegacyTable, from_user_id: int, to_user_id: int) -> list[int]:
        """Point every row linked to ``from_user_id`` at ``to_user_id``. Returns row ids."""
        ...

    async def count(self, table: LegacyTable) -> int:
        ...

    async def count_unlinked(self, table: LegacyTable) -> int:
        ...


class SQLLegacyRecordRepository:
    """
    SQLAlchemy implementation of LegacyRecordRepository.

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

    async def find_unlinked(self, table: LegacyTable) -> list[LegacyRecord]:
        with self._tracer.span(
            "usermigration.legacy_repo.find_unlinked",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "SELECT",
                ATTR_LEGACY_TABLE: table.name,
            },
        ):
            columns = ", ".join(table.columns)
            query = text(
                f"SELECT id, user_id, {columns} FROM {table.name} "
                "WHERE user_id IS NULL ORDER BY id"
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query)
                rows = result.fetchall()
            return [self._row_to_record(table, row) for row in rows]

    async def link(self, table: LegacyTable, record_id: int, user_id: int) -> bool:
        with self._tracer.span(
            "usermigration.legacy_repo.link",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "UPDATE",
                ATTR_LEGACY_TABLE: table.name,
                ATTR_RECORD_ID: record_id,
            },
        ):
            query = text(
                f"UPDATE {table.name} SET user_id = :user_id "
                "WHERE id = :id AND user_id IS NULL"
            )
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, {"user_id": user_id, "id": record_id})
            return result.rowcount == 1

    async def relink(self, table: LegacyTable, from_user_id: int, to_user_id: int) -> list[int]:
        with self._tracer.span(
            "usermigration.legacy_repo.relink",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "UPDATE",
                ATTR_LEGACY_TABLE: table.name,
            },
        ):
            select_query = text(f"SELECT id FROM {table.name} WHERE user_id = :user_id ORDER BY id")
            update_query = text(
                f"UPDATE {table.name} SET user_id = :to_user_id WHERE user_id = :from_user_id"
            )
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(select_query, {"user_id": from_user_id})
                record_ids = [row[0] for row in result.fetchall()]
                if record_ids:
                    await conn.execute(
                        update_query,
                        {"to_user_id": to_user_id, "from_user_id": from_user_id},
                    )
            return record_ids

    async def count(self, table: LegacyTable) -> int:
        return await self._count(table, f"SELECT COUNT(*) FROM {table.name}")

    async def count_unlinked(self, table: LegacyTable) -> int:
        return await self._count(
            table, f"SELECT COUNT(*) FROM {table.name} WHERE user_id IS NULL"
        )

    async def _count(self, table: LegacyTable, sql: str) -> int:
        with self._tracer.span(
            "usermigration.legacy_repo.count",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "SELECT",
                ATTR_LEGACY_TABLE: table.name,
            },
        ):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(text(sql))
                return int(result.scalar_one())

    def _row_to_record(self, table: LegacyTable, row: Any) -> LegacyRecord:
        return LegacyRecord(
            id=row[0],
            table=table.name,
            user_id=row[1],
            fields=dict(zip(table.columns, row[2:], strict=True)),
        )


class InMemoryLegacyRecordRepository:
    """In-memory implementation of LegacyRecordRepository."""

    def __init__(self, state: InMemoryState, undo_log: UndoLog | None = None) -> None:
        self._state = state
        self._undo_log = undo_log

    def _rows(self, table: LegacyTable) -> dict[int, LegacyRecord]:
        return self._state.records.setdefault(table.name, {})

    async def find_unlinked(self, table: LegacyTable) -> list[LegacyRecord]:
        self._state.raise_injected(f"find_unlinked:{table.name}")
        rows = self._rows(table)
        return [rows[record_id] for record_id in sorted(rows) if rows[record_id].user_id is None]

    async def link(self, table: LegacyTable, record_id: int, user_id: int) -> bool:
        self._state.raise_injected(f"link:{table.name}:{record_id}")
        rows = self._rows(table)
        previous = rows[record_id]
        if previous.user_id is not None:
            return False
        rows[record_id] = previous.model_copy(update={"user_id": user_id})

        def undo() -> None:
            rows[record_id] = previous

        record_undo(self._undo_log, undo)
        return True

    async def relink(self, table: LegacyTable, from_user_id: int, to_user_id: int) -> list[int]:
        rows = self._rows(table)
        record_ids = [rid for rid in sorted(rows) if rows[rid].user_id == from_user_id]
        previous = {record_id: rows[record_id] for record_id in record_ids}
        for record_id in record_ids:
            rows[record_id] = previous[record_id].model_copy(update={"user_id": to_user_id})

        def undo() -> None:
            rows.update(previous)

        if record_ids:
            record_undo(self._undo_log, undo)
        return record_ids

    async def count(self, table: LegacyTable) -> int:
        return len(self._rows(table))

    async def count_unlinked(self, table: LegacyTable) -> int:
        return sum(1 for record in self._rows(table).values() if record.user_id is None)


__all__ = [
    "LegacyRecordRepository",
    "SQLLegacyRecordRepository",
    "InMemoryLegacyRecordRepository",
]
