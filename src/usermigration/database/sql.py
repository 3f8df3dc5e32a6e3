"""
SQLAlchemy backend for the migration.

``SQLMigrationDatabase`` runs against PostgreSQL (asyncpg) or SQLite
(aiosqlite) through an AsyncEngine.

Readiness and rollback either call database routines installed by the
pre-migration script (the default) or use built-in equivalents:

    Routines (default):
        readiness  SELECT validate_migration_readiness()
        rollback   CALL emergency_rollback()
        backup     left to the database script

    Built-in (readiness_function=None, rollback_procedure=None):
        readiness  every required table exists
        backup     (id, user_id) of each legacy table copied to <table>_backup,
                   highest users.id recorded in migration_backup_meta
        rollback   links restored from the backups, newer users deleted

Usage:
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/marketplace")
    >>> database = SQLMigrationDatabase(engine)
    >>> result = await MigrationOrchestrator(database).execute_migration(MigrationConfig())

SQLite needs ``configure_sqlite_savepoints(engine)`` before use: the pysqlite
driver's own transaction handling breaks SAVEPOINT.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, inspect, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from usermigration.exceptions import (
    BackupError,
    ConstraintAlreadyExistsError,
    ForeignKeyConstraintError,
    RollbackError,
    translate_database_error,
)
from usermigration.legacy import LEGACY_TABLES, REQUIRED_TABLES, LegacyTable
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_LEGACY_TABLE,
)
from usermigration.repositories import (
    SQLLegacyRecordRepository,
    SQLMigrationAuditRepository,
    SQLMigrationStatusRepository,
    SQLUserRepository,
)

logger = logging.getLogger(__name__)

_ALREADY_EXISTS_MARKERS = ("already exists", "duplicate key name", "duplicate foreign key")


def configure_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself on SQLite so SAVEPOINT works.

    Args:
        engine: An engine using the sqlite+aiosqlite dialect
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


class SQLUnitOfWork:
    """Repositories bound to one AsyncConnection inside an open transaction."""

    def __init__(self, conn: AsyncConnection, tracer: Tracer) -> None:
        self._conn = conn
        self._users = SQLUserRepository(conn, tracer=tracer)
        self._records = SQLLegacyRecordRepository(conn, tracer=tracer)
        self._audit = SQLMigrationAuditRepository(conn, tracer=tracer)

    @property
    def users(self) -> SQLUserRepository:
        return self._users

    @property
    def records(self) -> SQLLegacyRecordRepository:
        return self._records

    @property
    def audit(self) -> SQLMigrationAuditRepository:
        return self._audit

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        try:
            async with self._conn.begin_nested():
                yield
        except SQLAlchemyError as e:
            raise translate_database_error(e) from e


class SQLMigrationDatabase:
    """
    MigrationDatabase backed by a SQLAlchemy AsyncEngine.

    Args:
        engine: Async engine for PostgreSQL or SQLite
        readiness_function: Database function returning readiness as a boolean,
            or None for the built-in table check
        rollback_procedure: Stored procedure restoring the pre-migration state,
            or None for the built-in snapshot restore
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        readiness_function: str | None = "validate_migration_readiness",
        rollback_procedure: str | None = "emergency_rollback",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._readiness_function = readiness_function
        self._rollback_procedure = rollback_procedure
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._users = SQLUserRepository(engine, tracer=self._tracer)
        self._records = SQLLegacyRecordRepository(engine, tracer=self._tracer)
        self._audit = SQLMigrationAuditRepository(engine, tracer=self._tracer)
        self._status = SQLMigrationStatusRepository(engine, tracer=self._tracer)

    @property
    def system(self) -> str:
        return self._engine.dialect.name

    @property
    def users(self) -> SQLUserRepository:
        return self._users

    @property
    def records(self) -> SQLLegacyRecordRepository:
        return self._records

    @property
    def audit(self) -> SQLMigrationAuditRepository:
        return self._audit

    @property
    def status(self) -> SQLMigrationStatusRepository:
        return self._status

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[SQLUnitOfWork]:
        async with self._engine.begin() as conn:
            yield SQLUnitOfWork(conn, self._tracer)

    async def validate_readiness(self) -> bool:
        with self._tracer.span(
            "usermigration.database.validate_readiness",
            {ATTR_DB_SYSTEM: self.system, ATTR_DB_OPERATION: "SELECT"},
        ):
            if self._readiness_function is None:
                missing = await self.missing_tables()
                if missing:
                    logger.warning("Missing required tables: %s", ", ".join(missing))
                return not missing

            async with self._engine.connect() as conn:
                result = await conn.execute(text(f"SELECT {self._readiness_function}()"))
                return bool(result.scalar())

    async def create_backup_snapshots(self) -> None:
        if self._rollback_procedure is not None:
            logger.info(
                "Backup snapshots are managed by the %s procedure",
                self._rollback_procedure,
            )
            return

        with self._tracer.span(
            "usermigration.database.create_backup_snapshots",
            {ATTR_DB_SYSTEM: self.system, ATTR_DB_OPERATION: "CREATE"},
        ):
            try:
                async with self._engine.begin() as conn:
                    for table in LEGACY_TABLES:
                        await conn.execute(text(f"DROP TABLE IF EXISTS {table.name}_backup"))
                        await conn.execute(
                            text(
                                f"CREATE TABLE {table.name}_backup AS "
                                f"SELECT id, user_id FROM {table.name}"
                            )
                        )
                    await conn.execute(
                        text(
                            """
                            CREATE TABLE IF NOT EXISTS migration_backup_meta (
                                snapshot_id INTEGER PRIMARY KEY,
                                max_user_id BIGINT NOT NULL
                            )
                            """
                        )
                    )
                    await conn.execute(text("DELETE FROM migration_backup_meta"))
                    await conn.execute(
                        text(
                            "INSERT INTO migration_backup_meta (snapshot_id, max_user_id) "
                            "SELECT 1, COALESCE(MAX(id), 0) FROM users"
                        )
                    )
            except SQLAlchemyError as e:
                raise BackupError(f"Failed to create backup snapshots: {e}") from e

            logger.info("Created backup snapshots for %d legacy tables", len(LEGACY_TABLES))

    async def emergency_rollback(self) -> None:
        with self._tracer.span(
            "usermigration.database.emergency_rollback",
            {ATTR_DB_SYSTEM: self.system, ATTR_DB_OPERATION: "ROLLBACK"},
        ):
            try:
                async with self._engine.begin() as conn:
                    if self._rollback_procedure is not None:
                        await conn.execute(text(f"CALL {self._rollback_procedure}()"))
                    else:
                        await self._restore_snapshot(conn)
            except SQLAlchemyError as e:
                raise RollbackError(f"Emergency rollback failed: {e}") from e

    async def _restore_snapshot(self, conn: AsyncConnection) -> None:
        result = await conn.execute(
            text("SELECT max_user_id FROM migration_backup_meta WHERE snapshot_id = 1")
        )
        max_user_id = result.scalar()
        if max_user_id is None:
            raise RollbackError("No backup snapshot to restore")

        for table in LEGACY_TABLES:
            await conn.execute(
                text(
                    f"""
                    UPDATE {table.name}
                    SET user_id = (
                        SELECT b.user_id FROM {table.name}_backup b
                        WHERE b.id = {table.name}.id
                    )
                    WHERE id IN (SELECT id FROM {table.name}_backup)
                    """
                )
            )
        result = await conn.execute(
            text("DELETE FROM users WHERE id > :max_user_id"),
            {"max_user_id": max_user_id},
        )
        logger.info("Restored snapshot, removed %d users created by the migration", result.rowcount)

    async def add_foreign_key(self, table: LegacyTable) -> None:
        with self._tracer.span(
            "usermigration.database.add_foreign_key",
            {
                ATTR_DB_SYSTEM: self.system,
                ATTR_DB_OPERATION: "ALTER",
                ATTR_LEGACY_TABLE: table.name,
            },
        ):
            if self.system == "sqlite":
                logger.info(
                    "SQLite cannot add constraints to existing tables, skipping %s",
                    table.constraint_name,
                )
                return

            ddl = text(
                f"ALTER TABLE {table.name} ADD CONSTRAINT {table.constraint_name} "
                "FOREIGN KEY (user_id) REFERENCES users(id)"
            )
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(ddl)
            except DBAPIError as e:
                message = str(e.orig)
                if any(marker in message.lower() for marker in _ALREADY_EXISTS_MARKERS):
                    raise ConstraintAlreadyExistsError(
                        table.name, table.constraint_name, message
                    ) from e
                raise ForeignKeyConstraintError(table.name, table.constraint_name, message) from e

    async def missing_tables(self) -> list[str]:
        async with self._engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        return [name for name in REQUIRED_TABLES if name not in existing]

    async def find_repeated_emails(self, min_occurrences: int = 3) -> dict[str, int]:
        with self._tracer.span(
            "usermigration.database.find_repeated_emails",
            {ATTR_DB_SYSTEM: self.system, ATTR_DB_OPERATION: "SELECT"},
        ):
            query = text(
                """
                SELECT email, COUNT(*) AS occurrences
                FROM (
                    SELECT email FROM users
                    UNION ALL
                    SELECT email FROM buyers
                ) AS all_emails
                WHERE email IS NOT NULL
                GROUP BY email
                HAVING COUNT(*) >= :min_occurrences
                ORDER BY email
                """
            )
            async with self._engine.connect() as conn:
                result = await conn.execute(query, {"min_occurrences": min_occurrences})
                return {row[0]: int(row[1]) for row in result.fetchall()}


__all__ = ["SQLMigrationDatabase", "SQLUnitOfWork", "configure_sqlite_savepoints"]
