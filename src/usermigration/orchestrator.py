"""
MigrationOrchestrator - Runs the whole user backfill.

Steps, in order:

    VALIDATION               database readiness check
    BACKUP_CREATION          snapshot for the emergency rollback
    (phases)                 buyers, vendors, admins and employees backfilled
                             concurrently; all four are awaited
    ADD_FK_CONSTRAINTS       user_id foreign keys on every legacy table
    VALIDATE_DATA_INTEGRITY  no legacy row may be left unlinked
    CLEANUP_DUPLICATE_DATA   optional merge of case-variant emails

A failure at any step stops the run. If configured, the emergency rollback
runs once, and the failure is reported in the returned MigrationResult;
execute_migration() does not raise.

Usage:
    >>> from usermigration import MigrationConfig, MigrationOrchestrator
    >>> from usermigration.database import SQLMigrationDatabase
    >>>
    >>> orchestrator = MigrationOrchestrator(SQLMigrationDatabase(engine))
    >>> result = await orchestrator.execute_migration(MigrationConfig(batch_size=500))
    >>> if not result.success:
    ...     print(f"Migration failed: {result.error_message}")
    >>>
    >>> # Backfill a single table
    >>> phase = await orchestrator.run_phase("vendors")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime

from usermigration.credentials import TemporaryCredentialIssuer
from usermigration.database.interface import MigrationDatabase
from usermigration.dedup import CLEANUP_PHASE, DuplicateUserCleaner
from usermigration.directory import UserDirectory
from usermigration.exceptions import (
    ConstraintAlreadyExistsError,
    DataIntegrityError,
    ErrorHandler,
    PhaseFailedError,
    PreValidationError,
    UnknownPhaseError,
    classify_exception,
)
from usermigration.legacy import LEGACY_TABLES, LegacyTable, get_legacy_table
from usermigration.migrator import PhaseMigrator
from usermigration.models import (
    MigrationConfig,
    MigrationPhaseResult,
    MigrationResult,
    MigrationStatusValue,
)
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_LEGACY_TABLE,
    ATTR_MIGRATION_STEP,
    ATTR_WORKER_COUNT,
)
from usermigration.recorder import MigrationRecorder
from usermigration.rollback import RollbackController

logger = logging.getLogger(__name__)

STEP_VALIDATION = "VALIDATION"
STEP_BACKUP = "BACKUP_CREATION"
STEP_FOREIGN_KEYS = "ADD_FK_CONSTRAINTS"
STEP_INTEGRITY = "VALIDATE_DATA_INTEGRITY"
STEP_CLEANUP = CLEANUP_PHASE


class MigrationOrchestrator:
    """
    Coordinates validation, backup, the four backfill phases and the
    post-migration steps.

    Collaborators are built from ``database`` unless passed explicitly.

    Args:
        database: Storage backend
        directory: Find-or-create access to users
        recorder: Audit and status recorder
        rollback_controller: Emergency rollback
        cleaner: Duplicate user cleanup
        credentials: Temporary credentials for created users
        error_handler: Retry policy runner shared by the phase migrators
        tables: Legacy tables to backfill (default all four)
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        database: MigrationDatabase,
        *,
        directory: UserDirectory | None = None,
        recorder: MigrationRecorder | None = None,
        rollback_controller: RollbackController | None = None,
        cleaner: DuplicateUserCleaner | None = None,
        credentials: TemporaryCredentialIssuer | None = None,
        error_handler: ErrorHandler | None = None,
        tables: Sequence[LegacyTable] = LEGACY_TABLES,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._recorder = recorder or MigrationRecorder(database.status, tracer=self._tracer)
        self._directory = directory or UserDirectory(credentials, tracer=self._tracer)
        self._rollback = rollback_controller or RollbackController(database, tracer=self._tracer)
        self._cleaner = cleaner or DuplicateUserCleaner(
            database, self._recorder, tracer=self._tracer
        )
        self._error_handler = error_handler or ErrorHandler()
        self._tables = tuple(tables)
        self._migrators = {
            table.key: PhaseMigrator(
                table,
                database,
                self._directory,
                self._recorder,
                error_handler=self._error_handler,
                tracer=self._tracer,
            )
            for table in self._tables
        }

    async def execute_migration(self, config: MigrationConfig | None = None) -> MigrationResult:
        """
        Run the complete migration.

        Args:
            config: Run options (default MigrationConfig())

        Returns:
            The aggregate result. success is False if any step failed.
        """
        config = config or MigrationConfig()
        started_at = datetime.now(UTC)
        phase_results: dict[str, MigrationPhaseResult] = {}

        with self._tracer.span(
            "usermigration.orchestrator.execute_migration",
            {ATTR_DB_SYSTEM: self._database.system, ATTR_WORKER_COUNT: config.worker_count},
        ):
            logger.info("Starting user migration with config %s", config.to_dict())
            try:
                await self._run_step(STEP_VALIDATION, self._validate_readiness)
                await self._run_step(STEP_BACKUP, self._database.create_backup_snapshots)

                phase_results.update(await self._run_phases(config))
                failed = [name for name, r in phase_results.items() if not r.success]
                if failed:
                    raise PhaseFailedError(failed)

                await self._run_step(STEP_FOREIGN_KEYS, self._add_foreign_keys)
                await self._run_step(STEP_INTEGRITY, self._validate_integrity)

                if config.cleanup_duplicates:
                    await self._run_step(STEP_CLEANUP, self._cleanup_duplicates)

            except Exception as e:
                classification = classify_exception(e)
                logger.error(
                    "Migration failed [code=%s]: %s",
                    classification.error_code,
                    e,
                    exc_info=True,
                )
                rolled_back = False
                if config.auto_rollback_on_failure:
                    rolled_back = await self._rollback.rollback()
                return MigrationResult(
                    success=False,
                    started_at=started_at,
                    ended_at=datetime.now(UTC),
                    error_message=str(e),
                    phase_results=phase_results,
                    rolled_back=rolled_back,
                )

            result = MigrationResult(
                success=True,
                started_at=started_at,
                ended_at=datetime.now(UTC),
                phase_results=phase_results,
            )
            logger.info(
                "Migration completed in %d ms: %d processed, %d users created, %d errors",
                result.duration_ms,
                result.total_processed,
                result.total_created,
                result.total_errors,
            )
            return result

    async def run_phase(
        self,
        name: str,
        config: MigrationConfig | None = None,
    ) -> MigrationPhaseResult:
        """
        Run a single backfill phase.

        Args:
            name: BUYERS, VENDORS, ADMINS or EMPLOYEES (case-insensitive)
            config: Run options (default MigrationConfig())

        Raises:
            UnknownPhaseError: If no configured phase has that name.
        """
        table = get_legacy_table(name)
        migrator = self._migrators.get(table.key)
        if migrator is None:
            raise UnknownPhaseError(name)
        logger.info("Running single phase %s", table.key)
        return await migrator.migrate(config or MigrationConfig())

    async def _run_step(self, step: str, operation: Callable[[], Awaitable[object]]) -> None:
        with self._tracer.span(
            "usermigration.orchestrator.step",
            {ATTR_MIGRATION_STEP: step},
        ):
            logger.info("Step %s started", step)
            await self._recorder.update_status(step, MigrationStatusValue.RUNNING)
            try:
                await operation()
            except Exception as e:
                await self._recorder.update_status(
                    step, MigrationStatusValue.FAILED, error_message=str(e)
                )
                raise
            await self._recorder.update_status(step, MigrationStatusValue.COMPLETED)
            logger.info("Step %s completed", step)

    async def _validate_readiness(self) -> None:
        try:
            ready = await self._database.validate_readiness()
        except Exception as e:
            raise PreValidationError(f"Pre-migration validation failed: {e}") from e
        if not ready:
            raise PreValidationError()

    async def _run_phases(self, config: MigrationConfig) -> dict[str, MigrationPhaseResult]:
        semaphore = asyncio.Semaphore(config.worker_count)

        async def run(migrator: PhaseMigrator) -> MigrationPhaseResult:
            async with semaphore:
                if config.skip_completed_phases and await self._is_completed(migrator.table):
                    logger.info("Skipping %s: already completed", migrator.table.key)
                    return MigrationPhaseResult(
                        phase_name=migrator.table.result_name, skipped=True
                    )
                return await migrator.migrate(config)

        migrators = list(self._migrators.values())
        outcomes = await asyncio.gather(*(run(m) for m in migrators), return_exceptions=True)

        results: dict[str, MigrationPhaseResult] = {}
        for migrator, outcome in zip(migrators, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Phase %s crashed: %s", migrator.table.key, outcome)
                outcome = MigrationPhaseResult(
                    phase_name=migrator.table.result_name,
                    success=False,
                    error_message=str(outcome),
                )
            results[outcome.phase_name] = outcome
        return results

    async def _is_completed(self, table: LegacyTable) -> bool:
        status = await self._recorder.get_status(table.status_key)
        if status is None or status.status != MigrationStatusValue.COMPLETED:
            return False
        # A rollback restores links without touching phase statuses.
        unlinked = await self._database.records.count_unlinked(table)
        if unlinked:
            logger.info(
                "%s is marked COMPLETED but has %d unlinked rows, running it again",
                table.key,
                unlinked,
            )
            return False
        return True

    async def _add_foreign_keys(self) -> None:
        for table in self._tables:
            with self._tracer.span(
                "usermigration.orchestrator.add_foreign_key",
                {ATTR_LEGACY_TABLE: table.name},
            ):
                try:
                    await self._database.add_foreign_key(table)
                except ConstraintAlreadyExistsError:
                    logger.warning(
                        "Constraint %s already exists on %s",
                        table.constraint_name,
                        table.name,
                    )
                    continue
                logger.info("Added constraint %s on %s", table.constraint_name, table.name)

    async def _validate_integrity(self) -> None:
        orphans: dict[str, int] = {}
        for table in self._tables:
            count = await self._database.records.count_unlinked(table)
            if count:
                orphans[table.name] = count
        if orphans:
            raise DataIntegrityError(orphans)
        logger.info("Data integrity validation passed")

    async def _cleanup_duplicates(self) -> None:
        report = await self._cleaner.cleanup()
        logger.info("Duplicate cleanup report: %s", report.to_dict())


__all__ = [
    "MigrationOrchestrator",
    "STEP_VALIDATION",
    "STEP_BACKUP",
    "STEP_FOREIGN_KEYS",
    "STEP_INTEGRITY",
    "STEP_CLEANUP",
]
