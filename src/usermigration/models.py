"""
Data models for the user backfill migration.

Models in this module:

Enums:
    - UserRole: Roles a unified user can hold
    - MigrationStatusValue: Lifecycle of a phase or orchestrator step

Identity:
    - User: A row of the unified users table
    - UserCandidate: Identity extracted from a legacy record
    - LegacyRecord: A row of one of the four legacy tables

Configuration:
    - MigrationConfig: Options for one migration run

Tracking:
    - MigrationAuditEntry: Append-only audit row
    - PhaseStatus: Current status of a phase or step
    - MigrationPhaseResult: Outcome of one phase
    - MigrationResult: Outcome of a whole run
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserRole(Enum):
    """
    Roles of the unified user table.

    Only BUYER, SELLER, ADMIN and DATA_ENTRY are assigned by the backfill.
    """

    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"
    SUPPORT = "SUPPORT"
    CTO = "CTO"
    DATA_ENTRY = "DATA_ENTRY"


class MigrationStatusValue(Enum):
    """
    Status of a phase or orchestrator step.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                     |
                     +-----> FAILED

    Attributes:
        PENDING: Not started in this run.
        RUNNING: Currently executing.
        COMPLETED: Finished successfully.
        FAILED: Finished with an error. Not retried within the same run.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationStatusValue.COMPLETED, MigrationStatusValue.FAILED)

    def can_transition_to(self, target: MigrationStatusValue) -> bool:
        """
        Check if a transition to the target status is valid.

        A terminal status may go back to RUNNING, which happens when the
        migration is run again.
        """
        valid_transitions = {
            MigrationStatusValue.PENDING: [MigrationStatusValue.RUNNING],
            MigrationStatusValue.RUNNING: [
                MigrationStatusValue.COMPLETED,
                MigrationStatusValue.FAILED,
            ],
            MigrationStatusValue.COMPLETED: [MigrationStatusValue.RUNNING],
            MigrationStatusValue.FAILED: [MigrationStatusValue.RUNNING],
        }
        return target in valid_transitions.get(self, [])


class User(BaseModel):
    """
    A row of the unified users table.

    Email is unique and is the canonical identity key. Phone is the fallback
    lookup key.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    name: str
    email: str
    phone: str | None = None
    password_hash: str
    role: UserRole
    is_verified: bool = False
    is_active: bool = True
    must_reset_password: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UserCandidate(BaseModel):
    """
    Identity fields extracted from a legacy record.

    A candidate without an email cannot be migrated: validation fails and the
    record ends up in the phase's per-record errors.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    email: str
    phone: str | None = None
    role: UserRole
    is_verified: bool = False
    is_active: bool = True

    @field_validator("email")
    @classmethod
    def _email_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("email must not be blank")
        return value

    @field_validator("phone")
    @classmethod
    def _blank_phone_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class LegacyRecord(BaseModel):
    """A row of a legacy identity table, with its link to the users table."""

    id: int
    table: str
    fields: dict[str, Any] = Field(default_factory=dict)
    user_id: int | None = None

    def get(self, column: str, default: Any = None) -> Any:
        return self.fields.get(column, default)


@dataclass(frozen=True)
class MigrationConfig:
    """
    Options for one migration run.

    Attributes:
        auto_rollback_on_failure: Roll back to the snapshot on a fatal error (default True).
        cleanup_duplicates: Merge users whose emails differ only in case or
            whitespace after the backfill (default False).
        batch_size: Records per transaction (default 100).
        retry_attempts: Attempts per record for transient database errors (default 3).
        retry_delay_ms: Base backoff delay between those attempts (default 1000).
        worker_count: Phases allowed to run concurrently (default 4).
        skip_completed_phases: Skip phases whose stored status is COMPLETED and
            whose table has no unlinked rows (default False).

    Example:
        >>> config = MigrationConfig(batch_size=500, auto_rollback_on_failure=False)
        >>> config.batch_size
        500
    """

    auto_rollback_on_failure: bool = True
    cleanup_duplicates: bool = False
    batch_size: int = 100
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    worker_count: int = 4
    skip_completed_phases: bool = False

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {self.retry_attempts}")

        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {self.retry_delay_ms}")

        if self.worker_count < 1:
            raise ValueError(f"worker_count must be >= 1, got {self.worker_count}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_rollback_on_failure": self.auto_rollback_on_failure,
            "cleanup_duplicates": self.cleanup_duplicates,
            "batch_size": self.batch_size,
            "retry_attempts": self.retry_attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "worker_count": self.worker_count,
            "skip_completed_phases": self.skip_completed_phases,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        return cls(
            auto_rollback_on_failure=data.get("auto_rollback_on_failure", True),
            cleanup_duplicates=data.get("cleanup_duplicates", False),
            batch_size=data.get("batch_size", 100),
            retry_attempts=data.get("retry_attempts", 3),
            retry_delay_ms=data.get("retry_delay_ms", 1000),
            worker_count=data.get("worker_count", 4),
            skip_completed_phases=data.get("skip_completed_phases", False),
        )


@dataclass(frozen=True)
class MigrationAuditEntry:
    """
    Append-only record of a change made by the migration.

    Attributes:
        table_name: Legacy table that was changed.
        operation: What was done (BACKFILL_USER_ID, MERGE_DUPLICATE_USER).
        record_id: Primary key of the changed row.
        new_values: JSON-serializable values written.
        migration_phase: Phase status key that made the change.
        created_at: When the entry was written.
        id: Storage id, None until persisted.
    """

    table_name: str
    operation: str
    record_id: int
    new_values: dict[str, Any]
    migration_phase: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "operation": self.operation,
            "record_id": self.record_id,
            "new_values": self.new_values,
            "migration_phase": self.migration_phase,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class PhaseStatus:
    """
    Stored status of a phase or orchestrator step, keyed by phase_name.

    Attributes:
        phase_name: Phase status key or step name.
        status: Current status.
        updated_at: Last time the row was written.
        started_at: When the phase last went RUNNING.
        completed_at: When the phase last reached a terminal status.
        records_processed: Records attempted so far.
        records_total: Records found unlinked at phase start.
        error_message: Error of the last failure, if any.
    """

    phase_name: str
    status: MigrationStatusValue
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    records_processed: int | None = None
    records_total: int | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_name": self.phase_name,
            "status": self.status.value,
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "records_processed": self.records_processed,
            "records_total": self.records_total,
            "error_message": self.error_message,
        }


@dataclass
class MigrationPhaseResult:
    """
    Outcome of one phase.

    Mutable because the migrator fills it in while the phase runs.

    Attributes:
        phase_name: Result name (e.g., BUYERS_MIGRATION).
        success: False if the phase aborted.
        total_records: Records found unlinked at phase start.
        processed_records: Records attempted.
        created_users: Records linked to a user this phase created.
        linked_users: Records linked to an existing user. Every successful
            record counts as exactly one of created_users or linked_users.
        error_message: Why the phase aborted, if it did.
        errors: Per-record error messages by record id.
        skipped: True if the phase was skipped because it already completed.
    """

    phase_name: str
    success: bool = True
    total_records: int = 0
    processed_records: int = 0
    created_users: int = 0
    linked_users: int = 0
    error_message: str | None = None
    errors: dict[int, str] = field(default_factory=dict)
    skipped: bool = False

    def add_error(self, record_id: int, message: str) -> None:
        self.errors[record_id] = message

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_name": self.phase_name,
            "success": self.success,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "created_users": self.created_users,
            "linked_users": self.linked_users,
            "error_message": self.error_message,
            "errors": {str(k): v for k, v in self.errors.items()},
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class MigrationResult:
    """
    Outcome of a whole migration run.

    Attributes:
        success: True if every step completed.
        started_at: When the run started.
        ended_at: When the run ended.
        error_message: The fatal error, if any.
        phase_results: Per-phase results by result name.
        rolled_back: True if the emergency rollback ran and succeeded.
    """

    success: bool
    started_at: datetime
    ended_at: datetime
    error_message: str | None = None
    phase_results: dict[str, MigrationPhaseResult] = field(default_factory=dict)
    rolled_back: bool = False

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    @property
    def total_processed(self) -> int:
        return sum(r.processed_records for r in self.phase_results.values())

    @property
    def total_created(self) -> int:
        return sum(r.created_users for r in self.phase_results.values())

    @property
    def total_linked(self) -> int:
        return sum(r.linked_users for r in self.phase_results.values())

    @property
    def total_errors(self) -> int:
        return sum(r.error_count for r in self.phase_results.values())

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary with the per-phase breakdown and derived totals.
        """
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "rolled_back": self.rolled_back,
            "total_processed": self.total_processed,
            "total_created": self.total_created,
            "total_linked": self.total_linked,
            "total_errors": self.total_errors,
            "phase_results": {name: r.to_dict() for name, r in self.phase_results.items()},
        }


__all__ = [
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
]
