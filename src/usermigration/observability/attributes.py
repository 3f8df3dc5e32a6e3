"""
Standard span attribute names for usermigration.

Database attributes follow the OpenTelemetry semantic conventions. The rest
are namespaced under ``usermigration.``.
"""

# =============================================================================
# Database Attributes (OTEL semantic)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite', 'memory')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'INSERT', 'UPDATE')."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_PHASE = "usermigration.phase"
"""Phase status key (e.g., 'DATA_BACKFILL_BUYERS')."""

ATTR_MIGRATION_STEP = "usermigration.step"
"""Orchestrator step name (e.g., 'VALIDATION', 'ADD_FK_CONSTRAINTS')."""

ATTR_LEGACY_TABLE = "usermigration.table"
"""Legacy table being backfilled (e.g., 'buyers')."""

ATTR_RECORD_ID = "usermigration.record.id"
"""Primary key of a legacy record."""

ATTR_BATCH_SIZE = "usermigration.batch.size"
"""Number of records in a batch."""

ATTR_BATCH_INDEX = "usermigration.batch.index"
"""Zero-based index of a batch within its phase."""

ATTR_RECORDS_TOTAL = "usermigration.records.total"
"""Records found unlinked at the start of a phase."""

ATTR_WORKER_COUNT = "usermigration.worker_count"
"""Maximum number of phases running concurrently."""

ATTR_USER_ROLE = "usermigration.user.role"
"""Role expected for users touched by a phase."""
