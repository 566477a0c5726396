from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from totpgate.logging import get_logger

logger = get_logger(__name__)


class Argon2PasswordHasher:
    """argon2id hashing behind the ``hash``/``verify`` collaborator interface."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)
        # Verified against unknown accounts so the miss path costs the same
        self._dummy_hash = self._hasher.hash("totpgate-timing-equaliser")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False

    def burn_verification(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_hash)
