"""
usermigration - Backfill of legacy identity tables into a unified users table.

Buyers, vendors, admins and employees each live in their own legacy table.
The migration links every legacy row to exactly one user, creating users
where needed, in batches with one transaction per batch, an audit trail and
an emergency rollback.

Example:
    >>> from usermigration import MigrationConfig, MigrationOrchestrator
    >>> from usermigration.database import SQLMigrationDatabase
    >>>
    >>> orchestrator = MigrationOrchestrator(SQLMigrationDatabase(engine))
    >>> result = await orchestrator.execute_migration(MigrationConfig())
"""

from importlib.metadata import PackageNotFoundError, version

from usermigration.credentials import TemporaryCredentialIssuer
from usermigration.database import (
    InMemoryMigrationDatabase,
    MigrationDatabase,
    MigrationUnitOfWork,
    SQLMigrationDatabase,
    configure_sqlite_savepoints,
)
from usermigration.dedup import DuplicateCleanupReport, DuplicateUserCleaner
from usermigration.directory import UserDirectory
from usermigration.exceptions import (
    BackupError,
    ConstraintAlreadyExistsError,
    DatabaseUnavailableError,
    DataIntegrityError,
    DuplicateUserError,
    ErrorClassification,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    ForeignKeyConstraintError,
    MigrationError,
    PhaseFailedError,
    PreValidationError,
    RetryConfig,
    RollbackError,
    TransientDatabaseError,
    UnknownPhaseError,
    classify_exception,
)
from usermigration.legacy import (
    ADMINS,
    BUYERS,
    EMPLOYEES,
    LEGACY_TABLES,
    VENDORS,
    LegacyTable,
    get_legacy_table,
)
from usermigration.migrator import PhaseMigrator
from usermigration.models import (
    LegacyRecord,
    MigrationAuditEntry,
    MigrationConfig,
    MigrationPhaseResult,
    MigrationResult,
    MigrationStatusValue,
    PhaseStatus,
    User,
    UserCandidate,
    UserRole,
)
from usermigration.orchestrator import MigrationOrchestrator
from usermigration.recorder import MigrationRecorder
from usermigration.reporting import IntegrityReport, MigrationReporter
from usermigration.rollback import RollbackController

try:
    __version__ = version("usermigration")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "__version__",
    # Models
    "UserRole",
    "MigrationStatusValue",
    "User",
    "UserCandidate",
    "LegacyRecord",
    "MigrationConfig",
    "MigrationAuditEntry",
    "PhaseStatus",
    "MigrationPhaseResult",
    "MigrationResult",
    # Legacy tables
    "LegacyTable",
    "BUYERS",
    "VENDORS",
    "ADMINS",
    "EMPLOYEES",
    "LEGACY_TABLES",
    "get_legacy_table",
    # Components
    "MigrationOrchestrator",
    "PhaseMigrator",
    "UserDirectory",
    "MigrationRecorder",
    "RollbackController",
    "DuplicateUserCleaner",
    "DuplicateCleanupReport",
    "MigrationReporter",
    "IntegrityReport",
    "TemporaryCredentialIssuer",
    # Storage
    "MigrationDatabase",
    "MigrationUnitOfWork",
    "SQLMigrationDatabase",
    "InMemoryMigrationDatabase",
    "configure_sqlite_savepoints",
    # Errors
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "ErrorHandler",
    "classify_exception",
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
]
