"""
In-memory backend for the migration.

Used in tests and for dry runs. Transactions are emulated with an undo log:
a unit of work whose body raises is rolled back completely, and a savepoint
rolls back to its mark in the same log.

Behaviour that a real database would show under failure can be injected:

    >>> database = InMemoryMigrationDatabase()
    >>> database.inject_error("link:buyers:7", TransientDatabaseError("deadlock"))
    >>> database.inject_error("find_unlinked:admins", DatabaseUnavailableError("gone"))
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from usermigration.exceptions import (
    ConstraintAlreadyExistsError,
    ForeignKeyConstraintError,
    RollbackError,
)
from usermigration.legacy import LEGACY_TABLES, REQUIRED_TABLES, LegacyTable, get_legacy_table
from usermigration.models import LegacyRecord, User
from usermigration.repositories import (
    InMemoryLegacyRecordRepository,
    InMemoryMigrationAuditRepository,
    InMemoryMigrationStatusRepository,
    InMemoryUserRepository,
)
from usermigration.repositories._memory import InMemoryState, UndoLog

logger = logging.getLogger(__name__)


class InMemoryUnitOfWork:
    """Repositories sharing one undo log."""

    def __init__(self, state: InMemoryState) -> None:
        self._undo_log = UndoLog()
        self._users = InMemoryUserRepository(state, self._undo_log)
        self._records = InMemoryLegacyRecordRepository(state, self._undo_log)
        self._audit = InMemoryMigrationAuditRepository(state, self._undo_log)

    @property
    def users(self) -> InMemoryUserRepository:
        return self._users

    @property
    def records(self) -> InMemoryLegacyRecordRepository:
        return self._records

    @property
    def audit(self) -> InMemoryMigrationAuditRepository:
        return self._audit

    @property
    def undo_log(self) -> UndoLog:
        return self._undo_log

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        mark = self._undo_log.mark()
        try:
            yield
        except BaseException:
            self._undo_log.rollback_to(mark)
            raise


class InMemoryMigrationDatabase:
    """
    MigrationDatabase keeping every table in memory.

    Args:
        ready: Value returned by validate_readiness()
        existing_constraints: Constraint names treated as already present

    Attributes:
        state: The tables. Tests may inspect it directly.
        rollback_calls: Number of emergency_rollback() calls.
        constraints: Constraint names added so far.
    """

    def __init__(
        self,
        *,
        ready: bool = True,
        existing_constraints: Iterable[str] = (),
    ) -> None:
        self.state = InMemoryState()
        self.ready = ready
        self.rollback_calls = 0
        self.snapshot_calls = 0
        self.constraints: set[str] = set(existing_constraints)
        self.missing: set[str] = set()
        self.fail_rollback = False
        self.fail_constraints: dict[str, str] = {}
        self._snapshot: InMemoryState | None = None

        self._users = InMemoryUserRepository(self.state)
        self._records = InMemoryLegacyRecordRepository(self.state)
        self._audit = InMemoryMigrationAuditRepository(self.state)
        self._status = InMemoryMigrationStatusRepository(self.state)

    @property
    def system(self) -> str:
        return "memory"

    @property
    def users(self) -> InMemoryUserRepository:
        return self._users

    @property
    def records(self) -> InMemoryLegacyRecordRepository:
        return self._records

    @property
    def audit(self) -> InMemoryMigrationAuditRepository:
        return self._audit

    @property
    def status(self) -> InMemoryMigrationStatusRepository:
        return self._status

    # -- seeding and test hooks ------------------------------------------------

    def add_record(self, table: LegacyTable | str, record_id: int, **fields: Any) -> LegacyRecord:
        """Insert a legacy row. ``user_id`` may be passed among the fields."""
        if isinstance(table, str):
            table = get_legacy_table(table)
        user_id = fields.pop("user_id", None)
        record = LegacyRecord(id=record_id, table=table.name, fields=fields, user_id=user_id)
        self.state.records.setdefault(table.name, {})[record_id] = record
        return record

    def add_user(self, user: User) -> User:
        """Insert a user outside any transaction, assigning an id if missing."""
        user_id = user.id if user.id is not None else self.state.allocate_user_id()
        self.state.next_user_id = max(self.state.next_user_id, user_id + 1)
        stored = user.model_copy(update={"id": user_id})
        self.state.users[user_id] = stored
        return stored

    def inject_error(self, key: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of the operation named ``key``."""
        self.state.injected_errors.setdefault(key, []).extend(errors)

    def get_record(self, table: LegacyTable | str, record_id: int) -> LegacyRecord:
        if isinstance(table, str):
            table = get_legacy_table(table)
        return self.state.records[table.name][record_id]

    # -- MigrationDatabase -----------------------------------------------------

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[InMemoryUnitOfWork]:
        self.state.raise_injected("begin")
        uow = InMemoryUnitOfWork(self.state)
        try:
            yield uow
            self.state.raise_injected("commit")
        except BaseException:
            uow.undo_log.rollback()
            raise
        uow.undo_log.clear()

    async def validate_readiness(self) -> bool:
        self.state.raise_injected("validate_readiness")
        return self.ready

    async def create_backup_snapshots(self) -> None:
        self.state.raise_injected("create_backup_snapshots")
        self.snapshot_calls += 1
        self._snapshot = InMemoryState(
            users=dict(self.state.users),
            records={name: dict(rows) for name, rows in self.state.records.items()},
            next_user_id=self.state.next_user_id,
        )

    async def emergency_rollback(self) -> None:
        self.rollback_calls += 1
        if self.fail_rollback:
            raise RollbackError("Simulated rollback failure")
        if self._snapshot is None:
            raise RollbackError("No backup snapshot to restore")

        self.state.users.clear()
        self.state.users.update(self._snapshot.users)
        self.state.records.clear()
        self.state.records.update(
            {name: dict(rows) for name, rows in self._snapshot.records.items()}
        )
        logger.info("Restored in-memory snapshot")

    async def add_foreign_key(self, table: LegacyTable) -> None:
        if table.constraint_name in self.fail_constraints:
            raise ForeignKeyConstraintError(
                table.name, table.constraint_name, self.fail_constraints[table.constraint_name]
            )
        if table.constraint_name in self.constraints:
            raise ConstraintAlreadyExistsError(
                table.name,
                table.constraint_name,
                f"constraint {table.constraint_name} already exists",
            )
        self.constraints.add(table.constraint_name)

    async def missing_tables(self) -> list[str]:
        return [name for name in REQUIRED_TABLES if name in self.missing]

    async def find_repeated_emails(self, min_occurrences: int = 3) -> dict[str, int]:
        counts: dict[str, int] = {}
        emails = [user.email for user in self.state.users.values()]
        buyers = self.state.records.get(LEGACY_TABLES[0].name, {})
        emails.extend(record.get("email") for record in buyers.values())
        for email in emails:
            if email is not None:
                counts[email] = counts.get(email, 0) + 1
        return {email: n for email, n in sorted(counts.items()) if n >= min_occurrences}


__all__ = ["InMemoryMigrationDatabase", "InMemoryUnitOfWork"]
