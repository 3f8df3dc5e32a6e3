"""
Repositories for the user backfill migration.

Each concern has a protocol, a SQLAlchemy implementation (PostgreSQL and
SQLite) and an in-memory implementation for tests.
"""

from usermigration.repositories._connection import execute_with_connection
from usermigration.repositories.audit import (
    InMemoryMigrationAuditRepository,
    MigrationAuditRepository,
    SQLMigrationAuditRepository,
)
from usermigration.repositories.legacy import (
    InMemoryLegacyRecordRepository,
    LegacyRecordRepository,
    SQLLegacyRecordRepository,
)
from usermigration.repositories.status import (
    InMemoryMigrationStatusRepository,
    MigrationStatusRepository,
    SQLMigrationStatusRepository,
)
from usermigration.repositories.users import (
    InMemoryUserRepository,
    SQLUserRepository,
    UserRepository,
)

__all__ = [
    "execute_with_connection",
    "UserRepository",
    "SQLUserRepository",
    "InMemoryUserRepository",
    "LegacyRecordRepository",
    "SQLLegacyRecordRepository",
    "InMemoryLegacyRecordRepository",
    "MigrationAuditRepository",
    "SQLMigrationAuditRepository",
    "InMemoryMigrationAuditRepository",
    "MigrationStatusRepository",
    "SQLMigrationStatusRepository",
    "InMemoryMigrationStatusRepository",
]
