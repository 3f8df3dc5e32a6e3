"""
Audit and status recording.

Both writes are best effort: a failure to record is logged and the migration
carries on. An audit entry is written inside the migrated record's
transaction, in its own savepoint, so a failed audit insert never takes the
record's link down with it.
"""

from __future__ import annotations

import logging
from typing import Any

from usermigration.database.interface import MigrationUnitOfWork
from usermigration.models import MigrationAuditEntry, MigrationStatusValue, PhaseStatus
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_LEGACY_TABLE,
    ATTR_MIGRATION_PHASE,
    ATTR_RECORD_ID,
)
from usermigration.repositories import MigrationStatusRepository

logger = logging.getLogger(__name__)

BACKFILL_OPERATION = "BACKFILL_USER_ID"
MERGE_OPERATION = "MERGE_DUPLICATE_USER"


class MigrationRecorder:
    """
    Writes audit entries and phase statuses.

    Args:
        status_repo: Repository for the migration_status table
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        status_repo: MigrationStatusRepository,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._status_repo = status_repo
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def record_audit(
        self,
        uow: MigrationUnitOfWork,
        table_name: str,
        record_id: int,
        new_values: dict[str, Any],
        phase: str,
        operation: str = BACKFILL_OPERATION,
    ) -> bool:
        """
        Append an audit entry in the caller's transaction.

        Returns:
            False if the entry could not be written.
        """
        with self._tracer.span(
            "usermigration.recorder.record_audit",
            {
                ATTR_LEGACY_TABLE: table_name,
                ATTR_RECORD_ID: record_id,
                ATTR_MIGRATION_PHASE: phase,
            },
        ):
            entry = MigrationAuditEntry(
                table_name=table_name,
                operation=operation,
                record_id=record_id,
                new_values=new_values,
                migration_phase=phase,
            )
            try:
                async with uow.savepoint():
                    await uow.audit.record(entry)
            except Exception as e:
                logger.warning(
                    "Failed to write audit entry for %s %s: %s",
                    table_name,
                    record_id,
                    e,
                )
                return False
            return True

    async def update_status(
        self,
        phase: str,
        status: MigrationStatusValue,
        *,
        records_processed: int | None = None,
        records_total: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Upsert the status row of a phase or step.

        A transition the status state machine does not allow (for example
        RUNNING left behind by a crashed run) is logged and still written.

        Returns:
            False if the status could not be written.
        """
        with self._tracer.span(
            "usermigration.recorder.update_status",
            {ATTR_MIGRATION_PHASE: phase, "status": status.value},
        ):
            try:
                current = await self._status_repo.get(phase)
                previous = current.status if current else MigrationStatusValue.PENDING
                if not previous.can_transition_to(status):
                    logger.warning(
                        "Unexpected status transition for %s: %s -> %s",
                        phase,
                        previous.value,
                        status.value,
                    )
                await self._status_repo.upsert(
                    phase,
                    status,
                    records_processed=records_processed,
                    records_total=records_total,
                    error_message=error_message,
                )
            except Exception as e:
                logger.warning("Failed to update status of %s to %s: %s", phase, status.value, e)
                return False
            logger.debug("Status of %s is now %s", phase, status.value)
            return True

    async def get_status(self, phase: str) -> PhaseStatus | None:
        return await self._status_repo.get(phase)


__all__ = ["MigrationRecorder", "BACKFILL_OPERATION", "MERGE_OPERATION"]
