"""
SQL schema for the tables the migration reads and writes.

Tables:
    - users: unified identities (unique email and phone)
    - buyers, legacy_vendors, admins, employee_profiles: legacy identities
      with a nullable user_id link
    - migration_audit: append-only audit trail
    - migration_status: one row per phase or step

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from usermigration.schema import get_schema_statements

    async with engine.begin() as conn:
        for statement in get_schema_statements("sqlite"):
            await conn.execute(text(statement))

The legacy tables normally exist already; the statements use
``IF NOT EXISTS`` and leave them untouched.
"""

from pathlib import Path
from typing import Literal

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def list_backends() -> list[str]:
    """Backends with a schema template."""
    return sorted(path.stem for path in _TEMPLATES_DIR.glob("*.sql"))


def get_schema(backend: BackendName = "postgresql") -> str:
    """
    Get the schema SQL for a backend.

    Args:
        backend: The database backend

    Returns:
        The SQL script

    Raises:
        ValueError: If the backend is not supported
    """
    path = _TEMPLATES_DIR / f"{backend}.sql"
    if not path.exists():
        raise ValueError(
            f"Unknown backend: {backend}. Available backends: {', '.join(list_backends())}"
        )
    return path.read_text()


def get_schema_statements(backend: BackendName = "postgresql") -> list[str]:
    """
    Get the schema as individual statements.

    Drivers such as asyncpg and sqlite3 execute one statement per call.
    """
    lines = [
        line for line in get_schema(backend).splitlines() if not line.strip().startswith("--")
    ]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


__all__ = [
    "BackendName",
    "list_backends",
    "get_schema",
    "get_schema_statements",
]
