"""
Shared pytest fixtures for integration tests.

This module provides:
- An ``engine`` fixture parametrized over SQLite and PostgreSQL, with the
  migration schema created
- PostgreSQL provisioning through testcontainers
- Helpers to seed legacy rows and build a SQLMigrationDatabase

If aiosqlite, testcontainers or Docker is not available, the affected tests
are skipped.
"""

from __future__ import annotations

import subprocess
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from usermigration.credentials import TemporaryCredentialIssuer
from usermigration.database import SQLMigrationDatabase, configure_sqlite_savepoints
from usermigration.legacy import LEGACY_TABLES, LegacyTable
from usermigration.models import MigrationConfig
from usermigration.orchestrator import MigrationOrchestrator
from usermigration.schema import get_schema_statements

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "postgres: marks tests that require PostgreSQL")


# ============================================================================
# Infrastructure Detection
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass

TESTCONTAINERS_AVAILABLE = False
try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = TESTCONTAINERS_AVAILABLE and is_docker_available()


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_aiosqlite = pytest.mark.skipif(
    not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed (pip install aiosqlite)"
)

skip_if_no_postgres_infra = pytest.mark.skipif(
    not DOCKER_AVAILABLE,
    reason="PostgreSQL test infrastructure not available",
)

BACKENDS = [
    pytest.param("sqlite", marks=[pytest.mark.sqlite, skip_if_no_aiosqlite]),
    pytest.param("postgresql", marks=[pytest.mark.postgres, skip_if_no_postgres_infra]),
]

# Dropped before each PostgreSQL test so constraints added by a previous run go away.
_ALL_TABLES = (
    *(f"{table.name}_backup" for table in LEGACY_TABLES),
    "migration_backup_meta",
    "migration_audit",
    "migration_status",
    *(table.name for table in LEGACY_TABLES),
    "users",
)


# ============================================================================
# PostgreSQL Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Provide a PostgreSQL container for integration tests.

    The container is shared across all tests in the session.
    """
    if not DOCKER_AVAILABLE:
        pytest.skip("PostgreSQL testcontainer not available")

    container = PostgresContainer("postgres:15")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def postgres_connection_url(postgres_container: Any) -> str:
    """Get the asyncpg connection URL of the container."""
    url = postgres_container.get_connection_url()
    return url.replace("postgresql://", "postgresql+asyncpg://").replace("psycopg2", "asyncpg")


# ============================================================================
# Engine Fixtures
# ============================================================================


async def _drop_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for name in _ALL_TABLES:
            await conn.execute(text(f"DROP TABLE IF EXISTS {name} CASCADE"))


async def _create_schema(engine: AsyncEngine, backend: str) -> None:
    async with engine.begin() as conn:
        for statement in get_schema_statements(backend):  # type: ignore[arg-type]
            await conn.execute(text(statement))


@pytest.fixture(params=BACKENDS)
async def engine(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Provide an AsyncEngine with the migration schema created.

    SQLite uses a fresh file per test. PostgreSQL drops and recreates every
    table before the test.
    """
    backend = request.param
    if backend == "sqlite":
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'migration.db'}")
        configure_sqlite_savepoints(engine)
    else:
        url = request.getfixturevalue("postgres_connection_url")
        engine = create_async_engine(url, pool_size=5, max_overflow=10)
        await _drop_tables(engine)

    await _create_schema(engine, backend)

    yield engine

    await engine.dispose()


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def database(engine: AsyncEngine) -> SQLMigrationDatabase:
    """SQLMigrationDatabase using the built-in readiness check and snapshot rollback."""
    return SQLMigrationDatabase(
        engine,
        readiness_function=None,
        rollback_procedure=None,
        enable_tracing=False,
    )


@pytest.fixture
def orchestrator(database: SQLMigrationDatabase) -> MigrationOrchestrator:
    return MigrationOrchestrator(
        database,
        credentials=TemporaryCredentialIssuer(method="pbkdf2:sha256:1000"),
        enable_tracing=False,
    )


@pytest.fixture
def config(engine: AsyncEngine) -> MigrationConfig:
    """
    Run options for the backend.

    SQLite allows one writer at a time, so its phases run one after another.
    """
    worker_count = 1 if engine.dialect.name == "sqlite" else 4
    return MigrationConfig(batch_size=10, retry_delay_ms=0, worker_count=worker_count)


@pytest.fixture
def insert_rows(engine: AsyncEngine) -> Callable[..., Awaitable[None]]:
    """Insert rows into a legacy table. Each row is a dict of column values."""

    async def _insert(table: LegacyTable | str, rows: list[dict[str, Any]]) -> None:
        name = table if isinstance(table, str) else table.name
        async with engine.begin() as conn:
            for row in rows:
                columns = ", ".join(row)
                params = ", ".join(f":{column}" for column in row)
                await conn.execute(
                    text(f"INSERT INTO {name} ({columns}) VALUES ({params})"),
                    row,
                )

    return _insert


@pytest.fixture
def fetch_links(engine: AsyncEngine) -> Callable[[LegacyTable], Awaitable[dict[int, int | None]]]:
    """Read the user_id of every row of a legacy table, keyed by row id."""

    async def _fetch(table: LegacyTable) -> dict[int, int | None]:
        async with engine.connect() as conn:
            result = await conn.execute(text(f"SELECT id, user_id FROM {table.name} ORDER BY id"))
            return {row[0]: row[1] for row in result.fetchall()}

    return _fetch
