"""
Cleanup of users that are the same person under differently written emails.

The unique index only catches exact duplicates, so "Alice@Example.com" and
"alice@example.com " end up as two users when they come from different
legacy tables. The cleaner groups users by trimmed, lowercased email, keeps
the oldest user (lowest id) of each group, moves every legacy link to it and
deactivates the others. Nothing is deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from usermigration.database.interface import MigrationDatabase
from usermigration.exceptions import MigrationError
from usermigration.legacy import LEGACY_TABLES
from usermigration.models import User
from usermigration.observability import Tracer, create_tracer
from usermigration.recorder import MERGE_OPERATION, MigrationRecorder

logger = logging.getLogger(__name__)

CLEANUP_PHASE = "CLEANUP_DUPLICATE_DATA"


def canonical_email(email: str) -> str:
    return email.strip().lower()


def _persisted_id(user: User) -> int:
    if user.id is None:
        raise MigrationError(f"User {user.email} has no id and cannot be merged", phase=CLEANUP_PHASE)
    return user.id


@dataclass
class DuplicateCleanupReport:
    """
    What the cleanup changed.

    Attributes:
        duplicate_groups: Number of emails that had more than one user.
        deactivated_user_ids: Users deactivated in favour of a canonical user.
        relinked_records: Legacy rows moved to a canonical user.
    """

    duplicate_groups: int = 0
    deactivated_user_ids: list[int] = field(default_factory=list)
    relinked_records: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "duplicate_groups": self.duplicate_groups,
            "deactivated_user_ids": list(self.deactivated_user_ids),
            "relinked_records": self.relinked_records,
        }


class DuplicateUserCleaner:
    """
    Merges users whose emails are equal after trimming and lowercasing.

    Each group is merged in its own transaction.

    Args:
        database: Storage backend
        recorder: Writes one MERGE_DUPLICATE_USER audit entry per moved row
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        database: MigrationDatabase,
        recorder: MigrationRecorder,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._recorder = recorder
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def find_duplicate_groups(self) -> list[list[User]]:
        """Groups of two or more users sharing a canonical email, each sorted by id."""
        groups: dict[str, list[User]] = {}
        for user in await self._database.users.list_all():
            groups.setdefault(canonical_email(user.email), []).append(user)
        return [
            sorted(members, key=lambda u: u.id or 0)
            for _, members in sorted(groups.items())
            if len(members) > 1
        ]

    async def cleanup(self) -> DuplicateCleanupReport:
        with self._tracer.span("usermigration.dedup.cleanup"):
            report = DuplicateCleanupReport()
            for group in await self.find_duplicate_groups():
                await self._merge(group, report)

            logger.info(
                "Duplicate cleanup: %d groups, %d users deactivated, %d records relinked",
                report.duplicate_groups,
                len(report.deactivated_user_ids),
                report.relinked_records,
            )
            return report

    async def _merge(self, group: list[User], report: DuplicateCleanupReport) -> None:
        canonical, duplicates = group[0], group[1:]
        canonical_id = _persisted_id(canonical)
        deactivated: list[int] = []
        relinked = 0

        async with self._database.begin() as uow:
            for duplicate in duplicates:
                duplicate_id = _persisted_id(duplicate)
                for table in LEGACY_TABLES:
                    record_ids = await uow.records.relink(table, duplicate_id, canonical_id)
                    for record_id in record_ids:
                        await self._recorder.record_audit(
                            uow,
                            table.name,
                            record_id,
                            {"user_id": canonical_id, "previous_user_id": duplicate_id},
                            CLEANUP_PHASE,
                            operation=MERGE_OPERATION,
                        )
                    relinked += len(record_ids)

                if duplicate.is_active:
                    await uow.users.set_active(duplicate_id, False)
                    deactivated.append(duplicate_id)

        logger.info(
            "Merged %d duplicates of %s into user %s",
            len(duplicates),
            canonical.email,
            canonical_id,
        )
        report.duplicate_groups += 1
        report.deactivated_user_ids.extend(deactivated)
        report.relinked_records += relinked


__all__ = [
    "DuplicateUserCleaner",
    "DuplicateCleanupReport",
    "CLEANUP_PHASE",
    "canonical_email",
]
