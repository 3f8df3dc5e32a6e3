"""
MigrationStatusRepository - Upserts into the migration_status table.

One row per phase or orchestrator step, keyed by phase_name. Going RUNNING
stamps started_at and clears completed_at; reaching a terminal status stamps
completed_at. Counts that are not passed keep their stored value.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from usermigration.models import MigrationStatusValue, PhaseStatus
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_PHASE,
)
from usermigration.repositories._connection import (
    bind_timestamp,
    dialect_name,
    execute_with_connection,
    parse_timestamp,
)
from usermigration.repositories._memory import InMemoryState


@runtime_checkable
class MigrationStatusRepository(Protocol):
    """Protocol for phase status persistence."""

    async def upsert(
        self,
        phase_name: str,
        status: MigrationStatusValue,
        *,
        records_processed: int | None = None,
        records_total: int | None = None,
        error_message: str | None = None,
    ) -> None:
        ...

    async def get(self, phase_name: str) -> PhaseStatus | None:
        ...

    async def list_all(self) -> list[PhaseStatus]:
        """All statuses ordered by phase name."""
        ...


def _stamps(
    status: MigrationStatusValue, now: datetime
) -> tuple[datetime | None, datetime | None]:
    started_at = now if status == MigrationStatusValue.RUNNING else None
    completed_at = now if status.is_terminal else None
    return started_at, completed_at


class SQLMigrationStatusRepository:
    """
    SQLAlchemy implementation of MigrationStatusRepository.

    Uses ``INSERT ... ON CONFLICT (phase_name) DO UPDATE``, supported by
    PostgreSQL and SQLite.

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

    async def upsert(
        self,
        phase_name: str,
        status: MigrationStatusValue,
        *,
        records_processed: int | None = None,
        records_total: int | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._tracer.span(
            "usermigration.status_repo.upsert",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "UPSERT",
                ATTR_MIGRATION_PHASE: phase_name,
                "status": status.value,
            },
        ):
            now = datetime.now(UTC)
            started_at, completed_at = _stamps(status, now)
            query = text(
                """
                INSERT INTO migration_status (
                    phase_name, status, updated_at, started_at, completed_at,
                    records_processed, records_total, error_message
                ) VALUES (
                    :phase_name, :status, :updated_at, :started_at, :completed_at,
                    :records_processed, :records_total, :error_message
                )
                ON CONFLICT (phase_name) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    started_at = COALESCE(excluded.started_at, migration_status.started_at),
                    completed_at = excluded.completed_at,
                    records_processed = COALESCE(
                        excluded.records_processed, migration_status.records_processed
                    ),
                    records_total = COALESCE(
                        excluded.records_total, migration_status.records_total
                    ),
                    error_message = excluded.error_message
                """
            )
            params = {
                "phase_name": phase_name,
                "status": status.value,
                "updated_at": bind_timestamp(self._conn, now),
                "started_at": bind_timestamp(self._conn, started_at),
                "completed_at": bind_timestamp(self._conn, completed_at),
                "records_processed": records_processed,
                "records_total": records_total,
                "error_message": error_message,
            }
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get(self, phase_name: str) -> PhaseStatus | None:
        with self._tracer.span(
            "usermigration.status_repo.get",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "SELECT",
                ATTR_MIGRATION_PHASE: phase_name,
            },
        ):
            query = text(
                """
                SELECT phase_name, status, updated_at, started_at, completed_at,
                       records_processed, records_total, error_message
                FROM migration_status
                WHERE phase_name = :phase_name
                """
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"phase_name": phase_name})
                row = result.fetchone()
            return self._row_to_status(row) if row else None

    async def list_all(self) -> list[PhaseStatus]:
        with self._tracer.span(
            "usermigration.status_repo.list_all",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: "SELECT"},
        ):
            query = text(
                """
                SELECT phase_name, status, updated_at, started_at, completed_at,
                       records_processed, records_total, error_message
                FROM migration_status
                ORDER BY phase_name
                """
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query)
                rows = result.fetchall()
            return [self._row_to_status(row) for row in rows]

    def _row_to_status(self, row: Any) -> PhaseStatus:
        return PhaseStatus(
            phase_name=row[0],
            status=MigrationStatusValue(row[1]),
            updated_at=parse_timestamp(row[2]) or datetime.now(UTC),
            started_at=parse_timestamp(row[3]),
            completed_at=parse_timestamp(row[4]),
            records_processed=row[5],
            records_total=row[6],
            error_message=row[7],
        )


class InMemoryMigrationStatusRepository:
    """In-memory implementation of MigrationStatusRepository."""

    def __init__(self, state: InMemoryState) -> None:
        self._state = state

    async def upsert(
        self,
        phase_name: str,
        status: MigrationStatusValue,
        *,
        records_processed: int | None = None,
        records_total: int | None = None,
        error_message: str | None = None,
    ) -> None:
        self._state.raise_injected(f"status:{phase_name}")
        now = datetime.now(UTC)
        started_at, completed_at = _stamps(status, now)
        existing = self._state.statuses.get(phase_name)
        if existing is not None:
            started_at = started_at or existing.started_at
            if records_processed is None:
                records_processed = existing.records_processed
            if records_total is None:
                records_total = existing.records_total
        self._state.statuses[phase_name] = PhaseStatus(
            phase_name=phase_name,
            status=status,
            updated_at=now,
            started_at=started_at,
            completed_at=completed_at,
            records_processed=records_processed,
            records_total=records_total,
            error_message=error_message,
        )

    async def get(self, phase_name: str) -> PhaseStatus | None:
        return self._state.statuses.get(phase_name)

    async def list_all(self) -> list[PhaseStatus]:
        return [self._state.statuses[name] for name in sorted(self._state.statuses)]


__all__ = [
    "MigrationStatusRepository",
    "SQLMigrationStatusRepository",
    "InMemoryMigrationStatusRepository",
]
