"""
Protocols for the storage the migration runs against.

A ``MigrationDatabase`` hands out units of work (one per batch) and performs
the database-wide operations of the orchestrator: readiness check, backup
snapshot, emergency rollback and foreign key DDL. Repositories exposed on the
database itself run each call in its own transaction and are used for status
tracking and reporting.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from usermigration.legacy import LegacyTable
from usermigration.repositories import (
    LegacyRecordRepository,
    MigrationAuditRepository,
    MigrationStatusRepository,
    UserRepository,
)


@runtime_checkable
class MigrationUnitOfWork(Protocol):
    """
    One database transaction.

    Everything done through ``users``, ``records`` and ``audit`` commits or
    rolls back together. ``savepoint()`` opens a nested scope that is rolled
    back on its own when its body raises; the exception still propagates.
    """

    @property
    def users(self) -> UserRepository:
        ...

    @property
    def records(self) -> LegacyRecordRepository:
        ...

    @property
    def audit(self) -> MigrationAuditRepository:
        ...

    def savepoint(self) -> AbstractAsyncContextManager[None]:
        ...


@runtime_checkable
class MigrationDatabase(Protocol):
    """Storage backend of a migration run."""

    @property
    def system(self) -> str:
        """Backend name for logs and span attributes (e.g., 'postgresql', 'memory')."""
        ...

    @property
    def users(self) -> UserRepository:
        ...

    @property
    def records(self) -> LegacyRecordRepository:
        ...

    @property
    def audit(self) -> MigrationAuditRepository:
        ...

    @property
    def status(self) -> MigrationStatusRepository:
        ...

    def begin(self) -> AbstractAsyncContextManager[MigrationUnitOfWork]:
        """Open a transaction. Commits on normal exit, rolls back if the body raises."""
        ...

    async def validate_readiness(self) -> bool:
        """True if the database is ready to be migrated."""
        ...

    async def create_backup_snapshots(self) -> None:
        """
        Snapshot what the emergency rollback restores.

        Raises:
            BackupError: If the snapshot cannot be taken.
        """
        ...

    async def emergency_rollback(self) -> None:
        """
        Restore the state captured by the last snapshot.

        Raises:
            RollbackError: If the rollback fails.
        """
        ...

    async def add_foreign_key(self, table: LegacyTable) -> None:
        """
        Add the FK constraint from ``table.user_id`` to ``users.id``.

        Raises:
            ConstraintAlreadyExistsError: If the constraint is already present.
            ForeignKeyConstraintError: For any other DDL failure.
        """
        ...

    async def missing_tables(self) -> list[str]:
        """Required tables that do not exist."""
        ...

    async def find_repeated_emails(self, min_occurrences: int = 3) -> dict[str, int]:
        """Emails occurring at least ``min_occurrences`` times across users and buyers."""
        ...


__all__ = ["MigrationUnitOfWork", "MigrationDatabase"]
