"""
Connection handling helpers for the SQL repositories.

``execute_with_connection`` lets a repository accept either an AsyncEngine
(each call gets its own transaction) or an AsyncConnection that is already
inside a caller-managed transaction, which is how repositories join a batch
unit of work.

SQLite stores timestamps as ISO-8601 text, so timestamps are bound and read
through ``bind_timestamp`` and ``parse_timestamp``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Note:
        When an AsyncConnection is passed it is used directly and the caller
        owns the transaction.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """Name of the SQLAlchemy dialect behind ``conn`` (e.g., 'postgresql', 'sqlite')."""
    return conn.dialect.name


def bind_timestamp(conn: AsyncConnection | AsyncEngine, value: datetime | None) -> Any:
    """Convert a datetime into the value the dialect expects as a bind parameter."""
    if value is None:
        return None
    if dialect_name(conn) == "sqlite":
        return value.isoformat()
    return value


def parse_timestamp(value: Any) -> datetime | None:
    """Read a timestamp column that may come back as a datetime or as ISO text."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


__all__ = [
    "execute_with_connection",
    "dialect_name",
    "bind_timestamp",
    "parse_timestamp",
]
