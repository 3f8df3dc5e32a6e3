"""
UserRepository - Data access for the unified users table.

Responsibilities:
    - Look users up by email (canonical key) and by phone (fallback key)
    - Insert users, translating unique-index conflicts into DuplicateUserError
    - Deactivate duplicates found by the cleanup
    - Count users per role for reporting

Usage:
    >>> repo = SQLUserRepository(conn)
    >>> user = await repo.find_by_email("alice@example.com")
    >>> if user is None:
    ...     user = await repo.insert(new_user)
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from usermigration.exceptions import DuplicateUserError
from usermigration.models import User, UserRole
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import ATTR_DB_OPERATION, ATTR_DB_SYSTEM
from usermigration.repositories._connection import (
    bind_timestamp,
    dialect_name,
    execute_with_connection,
    parse_timestamp,
)
from usermigration.repositories._memory import InMemoryState, UndoLog, record_undo

_USER_COLUMNS = (
    "id, name, email, phone, password_hash, role, is_verified, is_active, "
    "must_reset_password, created_at"
)


@runtime_checkable
class UserRepository(Protocol):
    """
    Protocol for users table access.

    Implementations must enforce uniqueness of email and phone on insert and
    report a violation as DuplicateUserError.
    """

    async def find_by_email(self, email: str) -> User | None:
        """Exact email match."""
        ...

    async def find_by_phone(self, phone: str) -> User | None:
        """Exact phone match."""
        ...

    async def get(self, user_id: int) -> User | None:
        ...

    async def insert(self, user: User) -> User:
        """
        Insert a user and return it with its id.

        Raises:
            DuplicateUserError: If the email or phone is already taken.
        """
        ...

    async def set_active(self, user_id: int, is_active: bool) -> None:
        ...

    async def list_all(self) -> list[User]:
        """All users ordered by id."""
        ...

    async def count_by_role(self) -> dict[str, int]:
        ...


class SQLUserRepository:
    """
    SQLAlchemy implementation of UserRepository.

    Works with PostgreSQL and SQLite. Pass the AsyncConnection of a unit of
    work to take part in its transaction, or an AsyncEngine for standalone
    calls.

    Args:
        conn: Database connection or engine
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._db_system = dialect_name(conn)

    async def find_by_email(self, email: str) -> User | None:
        return await self._find_one("email", email)

    async def find_by_phone(self, phone: str) -> User | None:
        return await self._find_one("phone", phone)

    async def get(self, user_id: int) -> User | None:
        return await self._find_one("id", user_id)

    async def _find_one(self, column: str, value: Any) -> User | None:
        with self._tracer.span(
            "usermigration.user_repo.find",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: "SELECT", "lookup": column},
        ):
            query = text(f"SELECT {_USER_COLUMNS} FROM users WHERE {column} = :value")
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"value": value})
                row = result.fetchone()
            return self._row_to_user(row) if row else None

    async def insert(self, user: User) -> User:
        with self._tracer.span(
            "usermigration.user_repo.insert",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: "INSERT",
                "user.role": user.role.value,
            },
        ):
            query = text(
                """
                INSERT INTO users (
                    name, email, phone, password_hash, role,
                    is_verified, is_active, must_reset_password, created_at
                ) VALUES (
                    :name, :email, :phone, :password_hash, :role,
                    :is_verified, :is_active, :must_reset_password, :created_at
                )
                RETURNING id
                """
            )
            params = {
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "password_hash": user.password_hash,
                "role": user.role.value,
                "is_verified": user.is_verified,
                "is_active": user.is_active,
                "must_reset_password": user.must_reset_password,
                "created_at": bind_timestamp(self._conn, user.created_at),
            }
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    result = await conn.execute(query, params)
                    user_id = result.scalar_one()
            except IntegrityError as e:
                raise DuplicateUserError(user.email, str(e.orig)) from e
            return user.model_copy(update={"id": user_id})

    async def set_active(self, user_id: int, is_active: bool) -> None:
        with self._tracer.span(
            "usermigration.user_repo.set_active",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: "UPDATE"},
        ):
            query = text("UPDATE users SET is_active = :is_active WHERE id = :id")
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, {"is_active": is_active, "id": user_id})

    async def list_all(self) -> list[User]:
        with self._tracer.span(
            "usermigration.user_repo.list_all",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: "SELECT"},
        ):
            query = text(f"SELECT {_USER_COLUMNS} FROM users ORDER BY id")
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query)
                rows = result.fetchall()
            return [self._row_to_user(row) for row in rows]

    async def count_by_role(self) -> dict[str, int]:
        with self._tracer.span(
            "usermigration.user_repo.count_by_role",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: "SELECT"},
        ):
            query = text("SELECT role, COUNT(*) FROM users GROUP BY role ORDER BY role")
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query)
                return {row[0]: int(row[1]) for row in result.fetchall()}

    def _row_to_user(self, row: Any) -> User:
        return User(
            id=row[0],
            name=row[1],
            email=row[2],
            phone=row[3],
            password_hash=row[4],
            role=UserRole(row[5]),
            is_verified=bool(row[6]),
            is_active=bool(row[7]),
            must_reset_password=bool(row[8]),
            created_at=parse_timestamp(row[9]),
        )


class InMemoryUserRepository:
    """
    In-memory implementation of UserRepository.

    Emulates the unique indexes on email and phone. Writes are undone through
    ``undo_log`` when the enclosing unit of work rolls back.
    """

    def __init__(self, state: InMemoryState, undo_log: UndoLog | None = None) -> None:
        self._state = state
        self._undo_log = undo_log

    async def find_by_email(self, email: str) -> User | None:
        self._state.raise_injected("find_user")
        for user in self._state.users.values():
            if user.email == email:
                return user
        return None

    async def find_by_phone(self, phone: str) -> User | None:
        self._state.raise_injected("find_user")
        for user in self._state.users.values():
            if user.phone is not None and user.phone == phone:
                return user
        return None

    async def get(self, user_id: int) -> User | None:
        return self._state.users.get(user_id)

    async def insert(self, user: User) -> User:
        self._state.raise_injected(f"insert_user:{user.email}")
        for existing in self._state.users.values():
            if existing.email == user.email:
                raise DuplicateUserError(user.email, "email already exists")
            if user.phone is not None and existing.phone == user.phone:
                raise DuplicateUserError(user.email, f"phone {user.phone} already exists")

        user_id = self._state.allocate_user_id()
        stored = user.model_copy(update={"id": user_id})
        self._state.users[user_id] = stored
        record_undo(self._undo_log, lambda: self._state.users.pop(user_id, None))
        return stored

    async def set_active(self, user_id: int, is_active: bool) -> None:
        previous = self._state.users[user_id]
        self._state.users[user_id] = previous.model_copy(update={"is_active": is_active})

        def undo() -> None:
            self._state.users[user_id] = previous

        record_undo(self._undo_log, undo)

    async def list_all(self) -> list[User]:
        return [self._state.users[user_id] for user_id in sorted(self._state.users)]

    async def count_by_role(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for user in self._state.users.values():
            counts[user.role.value] = counts.get(user.role.value, 0) + 1
        return dict(sorted(counts.items()))


__all__ = [
    "UserRepository",
    "SQLUserRepository",
    "InMemoryUserRepository",
]
