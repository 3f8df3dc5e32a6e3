"""
Exceptions for the user backfill migration.

Exception Hierarchy:
    MigrationError (base)
    +-- PreValidationError
    +-- BackupError
    +-- PhaseFailedError
    +-- UnknownPhaseError
    +-- ForeignKeyConstraintError
    |   +-- ConstraintAlreadyExistsError
    +-- DataIntegrityError
    +-- RollbackError
    +-- DuplicateUserError
    +-- TransientDatabaseError
    +-- DatabaseUnavailableError

Error Classification:
    Every MigrationError carries an ErrorClassification (severity,
    recoverability, error code, suggested action). TRANSIENT errors are
    retried by ErrorHandler according to a RetryConfig; everything else
    propagates on the first failure.

Where errors stop:
    - Per-record errors are caught by PhaseMigrator and stored in the phase
      result.
    - DatabaseUnavailableError escapes the batch loop and fails the phase.
    - PreValidationError, PhaseFailedError, ForeignKeyConstraintError and
      DataIntegrityError abort the orchestrator run, which reports them in
      MigrationResult.error_message instead of raising.
    - RollbackError is logged by RollbackController and goes no further.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Data may be left inconsistent (failed rollback, integrity failure).
        ERROR: A phase or step failed.
        WARNING: Tolerated condition worth monitoring (constraint already exists).
        INFO: Informational condition.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The matching Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    How the system should respond to an error.

    Attributes:
        RECOVERABLE: An operator can fix the cause and rerun the migration.
        TRANSIENT: Temporary; retry with backoff.
        FATAL: The current run cannot continue.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled and reported.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Retry policy for TRANSIENT errors.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts, including the first one.
        base_delay_ms: Delay before the first retry, in milliseconds.
        max_delay_ms: Upper bound for any single delay.
        exponential_base: Growth factor between attempts.
        jitter_factor: Random jitter as a fraction of the delay (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=3, base_delay_ms=1000, jitter_factor=0.0)
        >>> config.get_delay_ms(attempt=2)
        4000.0
    """

    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Delay before the retry that follows ``attempt`` (0-indexed).

        Args:
            attempt: Attempt number that just failed.

        Returns:
            Delay in milliseconds, capped at max_delay_ms.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=1000.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


class MigrationError(Exception):
    """
    Base exception for all migration errors.

    Attributes:
        message: Human-readable error description.
        phase: Phase or step the error belongs to, if known.
        table: Legacy table involved, if any.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and the migration_status table",
    )

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        table: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.phase = phase
        self.table = table
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and reports."""
        return {
            "message": self.message,
            "phase": self.phase,
            "table": self.table,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action or self.classification.suggested_action,
            "classification": self.classification.to_dict(),
        }


class PreValidationError(MigrationError):
    """Raised when the database reports it is not ready for migration."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PRE_VALIDATION_FAILED",
        category="validation",
        suggested_action="Run the readiness report and fix the listed issues",
    )

    def __init__(self, message: str = "Pre-migration validation failed") -> None:
        super().__init__(message, phase="VALIDATION")


class BackupError(MigrationError):
    """Raised when backup snapshots cannot be created."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BACKUP_FAILED",
        category="backup",
        suggested_action="Check permissions to create backup tables",
    )

    def __init__(self, message: str) -> None:
        super().__init__(message, phase="BACKUP_CREATION")


class PhaseFailedError(MigrationError):
    """
    Raised by the orchestrator when one or more phases report failure.

    Attributes:
        phase_names: Result names of the failed phases.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PHASE_FAILED",
        category="backfill",
        suggested_action="Fix the cause and rerun; completed records are not touched again",
    )

    def __init__(self, phase_names: list[str]) -> None:
        self.phase_names = phase_names
        super().__init__(
            f"Migration phase failed: {', '.join(phase_names)}",
            phase=phase_names[0] if phase_names else None,
        )


class UnknownPhaseError(MigrationError):
    """Raised when a phase is requested by a name that does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="UNKNOWN_PHASE",
        category="lookup",
        suggested_action="Use one of BUYERS, VENDORS, ADMINS, EMPLOYEES",
    )

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown migration phase: {name}")


class ForeignKeyConstraintError(MigrationError):
    """Raised when a foreign key constraint cannot be added."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="FK_CONSTRAINT_FAILED",
        category="ddl",
        suggested_action="Check for links pointing at missing users before adding constraints",
    )

    def __init__(self, table: str, constraint_name: str, error: str) -> None:
        self.constraint_name = constraint_name
        self.original_error = error
        super().__init__(
            f"Failed to add FK constraint {constraint_name} on {table}: {error}",
            phase="ADD_FK_CONSTRAINTS",
            table=table,
        )


class ConstraintAlreadyExistsError(ForeignKeyConstraintError):
    """Raised when the constraint being added is already present."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="FK_CONSTRAINT_EXISTS",
        category="ddl",
        suggested_action="None; the constraint from a previous run is kept",
    )


class DataIntegrityError(MigrationError):
    """
    Raised when legacy records are still unlinked after the backfill.

    Attributes:
        orphans: Orphan count per table (only tables with orphans).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DATA_INTEGRITY_FAILED",
        category="integrity",
        suggested_action="Inspect the per-record errors of each phase and rerun",
    )

    def __init__(self, orphans: dict[str, int]) -> None:
        self.orphans = orphans
        details = ", ".join(f"{count} orphaned {table}" for table, count in orphans.items())
        super().__init__(
            f"Data integrity validation failed: {details}",
            phase="VALIDATE_DATA_INTEGRITY",
        )


class RollbackError(MigrationError):
    """Raised by a database backend when the emergency rollback fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_FAILED",
        category="rollback",
        suggested_action="Restore the backup tables manually",
    )


class DuplicateUserError(MigrationError):
    """
    Raised when inserting a user collides with the unique email or phone index.

    Attributes:
        email: Email of the user that could not be inserted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DUPLICATE_USER",
        category="users",
        suggested_action="None; the existing user is looked up again and reused",
    )

    def __init__(self, email: str, error: str | None = None) -> None:
        self.email = email
        self.original_error = error
        super().__init__(f"User already exists for {email}", table="users")


class TransientDatabaseError(MigrationError):
    """Raised for database errors that may succeed on retry (locks, deadlocks)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="DB_TRANSIENT",
        category="database",
        suggested_action="None; the operation is retried automatically",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )


class DatabaseUnavailableError(MigrationError):
    """Raised when the database connection is lost. Fails the whole phase."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DB_UNAVAILABLE",
        category="database",
        suggested_action="Restore database connectivity and rerun the migration",
    )


def translate_database_error(exc: Exception) -> Exception:
    """
    Map a SQLAlchemy error onto the migration error taxonomy.

    Lost connections become DatabaseUnavailableError, other operational
    errors become TransientDatabaseError. Anything else is returned as-is.

    Args:
        exc: The exception raised by the database layer.

    Returns:
        The exception to raise in its place.
    """
    if isinstance(exc, MigrationError):
        return exc
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return DatabaseUnavailableError(f"Database connection lost: {exc.orig}")
    if isinstance(exc, (sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        return DatabaseUnavailableError(f"Database connection lost: {exc}")
    if isinstance(exc, sa_exc.OperationalError):
        return TransientDatabaseError(f"Transient database error: {exc.orig}")
    return exc


class ErrorHandler:
    """
    Runs operations with automatic retry for TRANSIENT errors.

    Example:
        >>> handler = ErrorHandler()
        >>> user = await handler.execute_with_retry(
        ...     lambda: migrate_record(record),
        ...     operation_name="buyers:42",
        ...     retry_config=RetryConfig(max_attempts=3),
        ... )
    """

    def __init__(
        self,
        alert_callback: Callable[[MigrationError], None] | None = None,
        sleep: Callable[[float], Coroutine[Any, Any, None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the error handler.

        Args:
            alert_callback: Invoked for errors whose severity warrants an alert.
            sleep: Coroutine used to wait between attempts.
        """
        self.alert_callback = alert_callback
        self._sleep = sleep

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation, retrying TRANSIENT migration errors.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            retry_config: Overrides the error's own retry configuration.
            on_retry: Callback invoked before each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            MigrationError: When retries are exhausted or the error is not transient.
            Exception: Any non-migration error, on first occurrence.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

            except MigrationError as e:
                self._handle_error(e, operation_name)

                if not e.recoverability.should_retry:
                    raise

                config = retry_config or e.retry_config or TRANSIENT_RETRY_CONFIG
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.1fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_ms / 1000.0,
                )
                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await self._sleep(delay_ms / 1000.0)
                attempt += 1

    def _handle_error(self, error: MigrationError, operation_name: str) -> None:
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "Error in '%s': %s [code=%s, recoverability=%s]",
            operation_name,
            error.message,
            classification.error_code,
            classification.recoverability.value,
        )
        if classification.severity.should_alert and self.alert_callback:
            try:
                self.alert_callback(error)
            except Exception:
                logger.exception("Alert callback failed")


def classify_exception(exc: Exception) -> ErrorClassification:
    """
    Classify any exception.

    Args:
        exc: The exception to classify.

    Returns:
        The error's own classification, or a generic FATAL one.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review the logs.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "MigrationError",
    "PreValidationError",
    "BackupError",
    "PhaseFailedError",
    "UnknownPhaseError",
    "ForeignKeyConstraintError",
    "ConstraintAlreadyExistsError",
    "DataIntegrityError",
    "RollbackError",
    "DuplicateUserError",
    "TransientDatabaseError",
    "DatabaseUnavailableError",
    "translate_database_error",
    "ErrorHandler",
    "classify_exception",
]
