"""
Backfill of one legacy table.

A ``PhaseMigrator`` links every unlinked row of its table to a user:

    1. Read the rows whose user_id is null, ordered by id.
    2. Split them into batches of ``config.batch_size``.
    3. Run each batch in its own transaction. Inside it, each row gets a
       savepoint in which the user is found or created, the row is linked
       and an audit entry is written.

A row that fails is rolled back to its savepoint and reported in the phase
result; the rest of the batch carries on. Rows failing with a transient
database error are retried up to ``config.retry_attempts`` times. An error
that escapes a batch (lost connection, failed commit) fails the phase.

Running a phase again only sees rows that are still unlinked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from usermigration.database.interface import MigrationDatabase, MigrationUnitOfWork
from usermigration.directory import UserDirectory
from usermigration.exceptions import (
    DatabaseUnavailableError,
    ErrorHandler,
    MigrationError,
    RetryConfig,
    translate_database_error,
)
from usermigration.legacy import LegacyTable
from usermigration.models import (
    LegacyRecord,
    MigrationConfig,
    MigrationPhaseResult,
    MigrationStatusValue,
    UserCandidate,
)
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_BATCH_INDEX,
    ATTR_BATCH_SIZE,
    ATTR_LEGACY_TABLE,
    ATTR_MIGRATION_PHASE,
    ATTR_RECORDS_TOTAL,
)
from usermigration.recorder import MigrationRecorder

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 10
"""Log progress every this many batches."""


@dataclass
class _BatchOutcome:
    processed: int = 0
    created: int = 0
    linked: int = 0
    errors: dict[int, str] = field(default_factory=dict)


class PhaseMigrator:
    """
    Migrates one legacy table.

    Args:
        table: The legacy table to backfill
        database: Storage backend
        directory: Find-or-create access to users
        recorder: Audit and status recorder
        error_handler: Retry policy runner (default ErrorHandler())
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        table: LegacyTable,
        database: MigrationDatabase,
        directory: UserDirectory,
        recorder: MigrationRecorder,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._table = table
        self._database = database
        self._directory = directory
        self._recorder = recorder
        self._error_handler = error_handler or ErrorHandler()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def table(self) -> LegacyTable:
        return self._table

    async def migrate(self, config: MigrationConfig) -> MigrationPhaseResult:
        """
        Run the phase.

        Never raises: a phase-level failure is returned as a result with
        success=False and the phase status is set to FAILED.

        Args:
            config: Batch size and retry settings

        Returns:
            Counts and per-record errors of this run.
        """
        table = self._table
        result = MigrationPhaseResult(phase_name=table.result_name)

        with self._tracer.span(
            "usermigration.migrator.migrate",
            {ATTR_LEGACY_TABLE: table.name, ATTR_MIGRATION_PHASE: table.status_key},
        ):
            logger.info("Starting %s backfill", table.name)
            await self._recorder.update_status(table.status_key, MigrationStatusValue.RUNNING)

            retry_config = RetryConfig(
                max_attempts=config.retry_attempts,
                base_delay_ms=float(config.retry_delay_ms),
                max_delay_ms=max(30000.0, float(config.retry_delay_ms)),
            )

            try:
                records = await self._database.records.find_unlinked(table)
                result.total_records = len(records)
                logger.info("Found %d unlinked %s", len(records), table.name)

                total_batches = (len(records) + config.batch_size - 1) // config.batch_size
                for index, start in enumerate(range(0, len(records), config.batch_size)):
                    batch = records[start : start + config.batch_size]
                    await self._migrate_batch(batch, index, result, retry_config)

                    if (index + 1) % PROGRESS_LOG_INTERVAL == 0:
                        logger.info(
                            "%s: %d/%d batches, %d/%d records",
                            table.name,
                            index + 1,
                            total_batches,
                            result.processed_records,
                            result.total_records,
                        )

            except Exception as e:
                error = translate_database_error(e)
                result.success = False
                result.error_message = str(error)
                logger.exception("%s backfill failed: %s", table.name, error)
                await self._recorder.update_status(
                    table.status_key,
                    MigrationStatusValue.FAILED,
                    records_processed=result.processed_records,
                    records_total=result.total_records,
                    error_message=result.error_message,
                )
                return result

            await self._recorder.update_status(
                table.status_key,
                MigrationStatusValue.COMPLETED,
                records_processed=result.processed_records,
                records_total=result.total_records,
            )
            logger.info(
                "Completed %s backfill: %d processed, %d users created, %d linked, %d errors",
                table.name,
                result.processed_records,
                result.created_users,
                result.linked_users,
                result.error_count,
            )
            return result

    async def _migrate_batch(
        self,
        batch: list[LegacyRecord],
        index: int,
        result: MigrationPhaseResult,
        retry_config: RetryConfig,
    ) -> None:
        outcome = _BatchOutcome()
        with self._tracer.span(
            "usermigration.migrator.batch",
            {
                ATTR_LEGACY_TABLE: self._table.name,
                ATTR_BATCH_INDEX: index,
                ATTR_BATCH_SIZE: len(batch),
                ATTR_RECORDS_TOTAL: result.total_records,
            },
        ):
            try:
                async with self._database.begin() as uow:
                    for record in batch:
                        await self._process_record(uow, record, outcome, retry_config)
            except BaseException:
                # The batch was rolled back: nothing it created or linked survives.
                result.processed_records += outcome.processed
                result.errors.update(outcome.errors)
                raise

        result.processed_records += outcome.processed
        result.created_users += outcome.created
        result.linked_users += outcome.linked
        result.errors.update(outcome.errors)

    async def _process_record(
        self,
        uow: MigrationUnitOfWork,
        record: LegacyRecord,
        outcome: _BatchOutcome,
        retry_config: RetryConfig,
    ) -> None:
        outcome.processed += 1
        try:
            created = await self._error_handler.execute_with_retry(
                lambda: self._migrate_record(uow, record),
                operation_name=f"{self._table.name}:{record.id}",
                retry_config=retry_config,
            )
        except DatabaseUnavailableError:
            raise
        except Exception as e:
            outcome.errors[record.id] = str(e)
            logger.error("Failed to migrate %s %s: %s", self._table.name, record.id, e)
            return

        if created:
            outcome.created += 1
        else:
            outcome.linked += 1

    async def _migrate_record(self, uow: MigrationUnitOfWork, record: LegacyRecord) -> bool:
        table = self._table
        candidate = self._candidate(record)

        async with uow.savepoint():
            user, created = await self._directory.find_or_create_user(uow, candidate, table.role)
            if user.id is None:
                raise MigrationError(
                    f"User resolved for {table.name} {record.id} has no id",
                    phase=table.status_key,
                    table=table.name,
                )
            if not await uow.records.link(table, record.id, user.id):
                raise MigrationError(
                    f"{table.name} {record.id} was linked by someone else",
                    phase=table.status_key,
                    table=table.name,
                )
            await self._recorder.record_audit(
                uow,
                table.name,
                record.id,
                {"user_id": user.id, "email": user.email, "user_created": created},
                table.status_key,
            )
        return created

    def _candidate(self, record: LegacyRecord) -> UserCandidate:
        try:
            return self._table.to_candidate(record)
        except ValidationError as e:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise MigrationError(
                f"Invalid {self._table.name} record {record.id}: {reasons}",
                phase=self._table.status_key,
                table=self._table.name,
            ) from e


__all__ = ["PhaseMigrator", "PROGRESS_LOG_INTERVAL"]
