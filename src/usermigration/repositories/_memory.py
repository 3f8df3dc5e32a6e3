"""
Shared state and undo log for the in-memory repositories.

Every in-memory repository of one ``InMemoryMigrationDatabase`` works on the
same ``InMemoryState``. Writes made inside a unit of work push an inverse
operation onto that unit's ``UndoLog``, so rolling back restores the state
exactly. A savepoint is a mark in the log.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from usermigration.models import LegacyRecord, MigrationAuditEntry, PhaseStatus, User


class UndoLog:
    """Stack of inverse operations for one transaction."""

    def __init__(self) -> None:
        self._entries: list[Callable[[], None]] = []

    def push(self, undo: Callable[[], None]) -> None:
        self._entries.append(undo)

    def mark(self) -> int:
        return len(self._entries)

    def rollback_to(self, mark: int) -> None:
        while len(self._entries) > mark:
            self._entries.pop()()

    def rollback(self) -> None:
        self.rollback_to(0)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class InMemoryState:
    """
    Tables of the in-memory backend.

    Attributes:
        users: Users by id.
        records: Legacy rows by table name, then by id.
        audit: Audit entries in insertion order.
        statuses: Phase statuses by phase name.
        injected_errors: Errors to raise from the next calls of an operation,
            keyed like "link:buyers:42" or "find_unlinked:buyers".
    """

    users: dict[int, User] = field(default_factory=dict)
    records: dict[str, dict[int, LegacyRecord]] = field(default_factory=dict)
    audit: list[MigrationAuditEntry] = field(default_factory=list)
    statuses: dict[str, PhaseStatus] = field(default_factory=dict)
    next_user_id: int = 1
    next_audit_id: int = 1
    injected_errors: dict[str, list[Exception]] = field(default_factory=dict)

    def allocate_user_id(self) -> int:
        user_id = self.next_user_id
        self.next_user_id += 1
        return user_id

    def allocate_audit_id(self) -> int:
        audit_id = self.next_audit_id
        self.next_audit_id += 1
        return audit_id

    def raise_injected(self, key: str) -> None:
        """Raise the next error queued for ``key``, if any."""
        queued = self.injected_errors.get(key)
        if queued:
            raise queued.pop(0)


def record_undo(undo_log: UndoLog | None, undo: Callable[[], None]) -> None:
    """Push ``undo`` when running inside a transaction. Outside one, writes are final."""
    if undo_log is not None:
        undo_log.push(undo)


__all__ = ["UndoLog", "InMemoryState", "record_undo"]
