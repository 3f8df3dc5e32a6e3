"""
Find-or-create access to the unified users table.

Email is the canonical identity key and phone the fallback. Phases run
concurrently and may race to create the same user; the unique index on
email decides the winner and the loser repeats its lookup.
"""

from __future__ import annotations

import logging

from usermigration.credentials import TemporaryCredentialIssuer
from usermigration.database.interface import MigrationUnitOfWork
from usermigration.exceptions import DuplicateUserError
from usermigration.models import User, UserCandidate, UserRole
from usermigration.observability import Tracer, create_tracer
from usermigration.observability.attributes import ATTR_USER_ROLE

logger = logging.getLogger(__name__)


class UserDirectory:
    """
    Resolves a legacy identity to exactly one user.

    Args:
        credentials: Issues password hashes for created users
        max_conflict_retries: Insert conflicts tolerated before giving up (default 3)
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        credentials: TemporaryCredentialIssuer | None = None,
        max_conflict_retries: int = 3,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if max_conflict_retries < 1:
            raise ValueError(f"max_conflict_retries must be >= 1, got {max_conflict_retries}")
        self._credentials = credentials or TemporaryCredentialIssuer()
        self._max_conflict_retries = max_conflict_retries
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def find_or_create_user(
        self,
        uow: MigrationUnitOfWork,
        candidate: UserCandidate,
        expected_role: UserRole,
    ) -> tuple[User, bool]:
        """
        Return the user for ``candidate``, creating it if needed.

        Lookup order is email, then phone (when present). An existing user is
        returned untouched even if its role differs from ``expected_role``.

        Args:
            uow: Unit of work of the current batch
            candidate: Identity extracted from the legacy record
            expected_role: Role of the phase doing the lookup

        Returns:
            The user and whether it was created by this call.

        Raises:
            DuplicateUserError: If the insert keeps conflicting after
                max_conflict_retries attempts.
        """
        with self._tracer.span(
            "usermigration.directory.find_or_create_user",
            {ATTR_USER_ROLE: expected_role.value},
        ):
            conflict: DuplicateUserError | None = None
            for attempt in range(self._max_conflict_retries):
                existing = await self._lookup(uow, candidate)
                if existing is not None:
                    self._check_role(existing, expected_role)
                    return existing, False

                user = await self._new_user(candidate, expected_role)
                try:
                    async with uow.savepoint():
                        created = await uow.users.insert(user)
                except DuplicateUserError as e:
                    conflict = e
                    logger.info(
                        "Concurrent insert for %s (attempt %d/%d), looking up again",
                        candidate.email,
                        attempt + 1,
                        self._max_conflict_retries,
                    )
                    continue

                logger.debug("Created user %s for %s", created.id, candidate.email)
                return created, True

            raise DuplicateUserError(
                candidate.email,
                f"insert conflicted {self._max_conflict_retries} times",
            ) from conflict

    async def _lookup(self, uow: MigrationUnitOfWork, candidate: UserCandidate) -> User | None:
        user = await uow.users.find_by_email(candidate.email)
        if user is None and candidate.phone:
            user = await uow.users.find_by_phone(candidate.phone)
        return user

    def _check_role(self, user: User, expected_role: UserRole) -> None:
        if user.role != expected_role:
            logger.warning(
                "User %s (%s) has role %s, expected %s; keeping existing role",
                user.id,
                user.email,
                user.role.value,
                expected_role.value,
            )

    async def _new_user(self, candidate: UserCandidate, role: UserRole) -> User:
        return User(
            name=candidate.name,
            email=candidate.email,
            phone=candidate.phone,
            password_hash=await self._credentials.issue(),
            role=role,
            is_verified=candidate.is_verified,
            is_active=candidate.is_active,
            must_reset_password=True,
        )


__all__ = ["UserDirectory"]
