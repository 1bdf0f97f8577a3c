from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError

from nexushub.config import Settings
from nexushub.logging import get_logger
from nexushub.service.errors import ServerError

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id wrapper that never leaks argon2 exceptions to callers."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost_kib=settings.password_hash_memory_cost_kib,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise ServerError("unable to hash password") from exc

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        """Return True only when ``plaintext`` matches ``stored_hash``."""
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("password_hash_malformed")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
