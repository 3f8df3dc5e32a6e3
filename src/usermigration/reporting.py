"""
Read-side reports on the migration: status, statistics, audit trail,
integrity and readiness issues.

Usage:
    >>> reporter = MigrationReporter(database)
    >>> report = await reporter.verify_integrity()
    >>> if not report.healthy:
    ...     print(report.orphans)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from usermigration.database.interface import MigrationDatabase
from usermigration.legacy import BUYERS, LEGACY_TABLES, USERS_TABLE, LegacyTable
from usermigration.models import MigrationStatusValue
from usermigration.observability import Tracer, create_tracer, traced
from usermigration.orchestrator import (
    STEP_BACKUP,
    STEP_FOREIGN_KEYS,
    STEP_INTEGRITY,
    STEP_VALIDATION,
)

logger = logging.getLogger(__name__)

TRACKED_PHASES: tuple[str, ...] = (
    STEP_VALIDATION,
    STEP_BACKUP,
    *(table.status_key for table in LEGACY_TABLES),
    STEP_FOREIGN_KEYS,
    STEP_INTEGRITY,
)
"""Statuses counted towards the completion percentage."""

REPEATED_EMAIL_THRESHOLD = 3
"""An email seen this often across users and buyers is reported as an issue."""


@dataclass(frozen=True)
class IntegrityReport:
    """
    Orphaned legacy rows per table.

    Attributes:
        orphans: Unlinked row count for every legacy table.
    """

    orphans: dict[str, int] = field(default_factory=dict)

    @property
    def total_orphans(self) -> int:
        return sum(self.orphans.values())

    @property
    def healthy(self) -> bool:
        return self.total_orphans == 0

    @property
    def integrity_score(self) -> int:
        return max(0, 100 - self.total_orphans)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orphans": dict(self.orphans),
            "total_orphans": self.total_orphans,
            "healthy": self.healthy,
            "integrity_score": self.integrity_score,
        }


class MigrationReporter:
    """
    Builds reports from the migration tables.

    Args:
        database: Storage backend
        tables: Legacy tables to report on (default all four)
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        database: MigrationDatabase,
        tables: Sequence[LegacyTable] = LEGACY_TABLES,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._tables = tuple(tables)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @traced("usermigration.reporter.get_status")
    async def get_status(self) -> dict[str, Any]:
        """Phase statuses, statistics and readiness (READY or NOT_READY)."""
        statuses = await self._database.status.list_all()
        try:
            ready = await self._database.validate_readiness()
        except Exception as e:
            logger.warning("Readiness check failed: %s", e)
            ready = False
        return {
            "phases": [status.to_dict() for status in statuses],
            "statistics": await self.get_statistics(),
            "readiness": "READY" if ready else "NOT_READY",
        }

    @traced("usermigration.reporter.get_statistics")
    async def get_statistics(self) -> dict[str, Any]:
        """Row counts, users per role and completion percentage."""
        users_by_role = await self._database.users.count_by_role()
        table_counts = {USERS_TABLE: sum(users_by_role.values())}
        for table in self._tables:
            table_counts[table.name] = await self._database.records.count(table)

        statuses = {s.phase_name: s.status for s in await self._database.status.list_all()}
        completed = sum(
            1 for phase in TRACKED_PHASES if statuses.get(phase) == MigrationStatusValue.COMPLETED
        )
        return {
            "table_counts": table_counts,
            "users_by_role": users_by_role,
            "completed_phases": completed,
            "total_phases": len(TRACKED_PHASES),
            "completion_percentage": round(completed * 100.0 / len(TRACKED_PHASES), 2),
        }

    @traced("usermigration.reporter.get_audit_trail")
    async def get_audit_trail(
        self,
        limit: int = 100,
        phase: str | None = None,
    ) -> list[dict[str, Any]]:
        """Newest audit entries first, optionally for one phase."""
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        entries = await self._database.audit.list_entries(limit=limit, phase=phase)
        return [entry.to_dict() for entry in entries]

    @traced("usermigration.reporter.verify_integrity")
    async def verify_integrity(self) -> IntegrityReport:
        orphans = {
            table.name: await self._database.records.count_unlinked(table)
            for table in self._tables
        }
        return IntegrityReport(orphans=orphans)

    @traced("usermigration.reporter.get_validation_issues")
    async def get_validation_issues(self) -> list[str]:
        """Human-readable problems that block or endanger the migration."""
        missing = await self._database.missing_tables()
        issues = [f"Missing table: {name}" for name in missing]
        if USERS_TABLE in missing or BUYERS.name in missing:
            return issues

        repeated = await self._database.find_repeated_emails(REPEATED_EMAIL_THRESHOLD)
        issues.extend(
            f"Email {email} appears {count} times across users and buyers"
            for email, count in repeated.items()
        )
        return issues


__all__ = [
    "MigrationReporter",
    "IntegrityReport",
    "TRACKED_PHASES",
    "REPEATED_EMAIL_THRESHOLD",
]
