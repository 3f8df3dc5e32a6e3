"""Storage backends for the migration."""

from usermigration.database.in_memory import InMemoryMigrationDatabase, InMemoryUnitOfWork
from usermigration.database.interface import MigrationDatabase, MigrationUnitOfWork
from usermigration.database.sql import (
    SQLMigrationDatabase,
    SQLUnitOfWork,
    configure_sqlite_savepoints,
)

__all__ = [
    "MigrationDatabase",
    "MigrationUnitOfWork",
    "SQLMigrationDatabase",
    "SQLUnitOfWork",
    "configure_sqlite_savepoints",
    "InMemoryMigrationDatabase",
    "InMemoryUnitOfWork",
]
