"""
Shared pytest fixtures for the usermigration tests.

This module provides:
- In-memory database fixtures (database, seeded helpers)
- Component fixtures (credentials, directory, recorder, orchestrator)
- Configuration fixtures (fast_config)
- SQLite availability check and markers
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from usermigration.credentials import TemporaryCredentialIssuer
from usermigration.database import InMemoryMigrationDatabase
from usermigration.directory import UserDirectory
from usermigration.legacy import ADMINS, BUYERS, EMPLOYEES, VENDORS, LegacyTable
from usermigration.models import LegacyRecord, MigrationConfig, User, UserRole
from usermigration.observability import MockTracer
from usermigration.orchestrator import MigrationOrchestrator
from usermigration.recorder import MigrationRecorder

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")
    config.addinivalue_line("markers", "integration: marks tests that use a real database")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def fast_config() -> MigrationConfig:
    """Default configuration without retry delays."""
    return MigrationConfig(retry_delay_ms=0)


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def credentials() -> TemporaryCredentialIssuer:
    """Credential issuer with a cheap hash so large seeds stay fast."""
    return TemporaryCredentialIssuer(method="pbkdf2:sha256:1000")


@pytest.fixture
def database() -> InMemoryMigrationDatabase:
    """Empty in-memory database."""
    return InMemoryMigrationDatabase()


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def directory(credentials: TemporaryCredentialIssuer) -> UserDirectory:
    return UserDirectory(credentials, enable_tracing=False)


@pytest.fixture
def recorder(database: InMemoryMigrationDatabase) -> MigrationRecorder:
    return MigrationRecorder(database.status, enable_tracing=False)


@pytest.fixture
def orchestrator(
    database: InMemoryMigrationDatabase,
    credentials: TemporaryCredentialIssuer,
) -> MigrationOrchestrator:
    return MigrationOrchestrator(database, credentials=credentials, enable_tracing=False)


# ============================================================================
# Seeding Helpers
# ============================================================================


def buyer_fields(index: int, **overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "buyer_name": f"Buyer {index}",
        "email": f"buyer{index}@example.com",
        "phone": f"+1555{index:07d}",
        "is_email_verified": index % 2 == 0,
    }
    fields.update(overrides)
    return fields


def vendor_fields(index: int, **overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "name": f"Vendor {index}",
        "email": f"vendor{index}@example.com",
        "phone": f"+1666{index:07d}",
        "is_verified": True,
    }
    fields.update(overrides)
    return fields


def admin_fields(index: int, **overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "name": f"Admin {index}",
        "email": f"admin{index}@example.com",
        "phone": f"+1777{index:07d}",
        "is_verified": True,
    }
    fields.update(overrides)
    return fields


def employee_fields(index: int, **overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "first_name": "Emp",
        "last_name": str(index),
        "work_email": f"employee{index}@corp.example.com",
        "personal_mobile": f"+1888{index:07d}",
        "status": "ACTIVE",
    }
    fields.update(overrides)
    return fields


FIELD_FACTORIES: dict[str, Callable[..., dict[str, Any]]] = {
    BUYERS.name: buyer_fields,
    VENDORS.name: vendor_fields,
    ADMINS.name: admin_fields,
    EMPLOYEES.name: employee_fields,
}


@pytest.fixture
def seed() -> Callable[..., list[LegacyRecord]]:
    """Factory seeding ``count`` rows of a legacy table into an in-memory database."""

    def _seed(
        database: InMemoryMigrationDatabase,
        table: LegacyTable,
        count: int,
        start: int = 1,
        **overrides: Any,
    ) -> list[LegacyRecord]:
        factory = FIELD_FACTORIES[table.name]
        return [
            database.add_record(table, index, **factory(index, **overrides))
            for index in range(start, start + count)
        ]

    return _seed


def make_user(
    email: str,
    role: UserRole = UserRole.BUYER,
    phone: str | None = None,
    user_id: int | None = None,
    **overrides: Any,
) -> User:
    return User(
        id=user_id,
        name=overrides.pop("name", email.split("@")[0]),
        email=email,
        phone=phone,
        password_hash=overrides.pop("password_hash", "hash"),
        role=role,
        **overrides,
    )


@pytest.fixture
def user_factory() -> Callable[..., User]:
    """Factory for User instances."""
    return make_user
