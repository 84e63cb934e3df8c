"""Password hashing and verification (argon2id).

Hashing is treated as a black box; this module only fixes parameters and
maps library outcomes to booleans. Hashing runs in a worker thread so the
event loop is not blocked.
"""

import asyncio
from dataclasses import dataclass

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


@dataclass
class Argon2Params:
    """Argon2 parameters (OWASP recommendations)."""
    time_cost: int = 3  # Iterations
    memory_cost: int = 65536  # 64 MiB in KiB
    parallelism: int = 4
    hash_len: int = 32
    salt_len: int = 16


class PasswordVerifier:
    """argon2id password hasher/verifier."""

    def __init__(self, params: Argon2Params | None = None):
        self.params = params or Argon2Params()
        self._hasher = PasswordHasher(
            time_cost=self.params.time_cost,
            memory_cost=self.params.memory_cost,
            parallelism=self.params.parallelism,
            hash_len=self.params.hash_len,
            salt_len=self.params.salt_len,
            type=Type.ID,
        )

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, password_hash: str | None, password: str) -> bool:
        """Check ``password`` against ``password_hash``. Invalid hashes verify as False."""
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    async def verify(self, password_hash: str | None, password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password_hash, password)

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_password, password)

    def needs_rehash(self, password_hash: str) -> bool:
        return self._hasher.check_needs_rehash(password_hash)
