"""
Temporary credentials for users created by the backfill.

Legacy identities carry no password the unified users table can reuse, so
every created user gets a random one-time secret, stored hashed, and is
flagged ``must_reset_password``.

Hashing is CPU-bound and runs in a worker thread so concurrent phases keep
making progress while users are created.
"""

from __future__ import annotations

import asyncio
import logging
import secrets

from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

DEFAULT_HASH_METHOD = "pbkdf2:sha256:60000"
"""Random tokens carry their own entropy, so a moderate work factor is enough."""


class TemporaryCredentialIssuer:
    """
    Issues password hashes for auto-created users.

    Args:
        fixed_password: Use this password for every user instead of a random
            token. Only for environments that require a known temporary
            password.
        token_bytes: Entropy of generated tokens.
        method: Hash method passed to werkzeug (default DEFAULT_HASH_METHOD).

    Example:
        >>> issuer = TemporaryCredentialIssuer()
        >>> password_hash = await issuer.issue()
        >>> password_hash.startswith("pbkdf2:")
        True
    """

    def __init__(
        self,
        fixed_password: str | None = None,
        token_bytes: int = 16,
        method: str = DEFAULT_HASH_METHOD,
    ) -> None:
        if fixed_password is not None and not fixed_password:
            raise ValueError("fixed_password must not be empty")
        self._fixed_password = fixed_password
        self._token_bytes = token_bytes
        self._method = method
        if fixed_password is not None:
            logger.warning("Issuing a fixed temporary password for migrated users")

    async def issue(self) -> str:
        """Return the hash of a new temporary password."""
        password = self._fixed_password or secrets.token_urlsafe(self._token_bytes)
        return await asyncio.to_thread(generate_password_hash, password, method=self._method)


__all__ = ["TemporaryCredentialIssuer", "DEFAULT_HASH_METHOD"]
