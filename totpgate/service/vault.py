from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from totpgate.logging import get_logger
from totpgate.service.errors import DecryptionError

logger = get_logger(__name__)


class SecretVault:
    """Reversible encryption for TOTP secrets and backup codes at rest.

    Fernet tokens carry their own random IV and an HMAC, so every call to
    :meth:`encrypt` yields a different ciphertext and :meth:`decrypt` needs
    nothing but the token and the key.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("vault key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        if plaintext == "":
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if ciphertext == "":
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.error("vault_decrypt_failed", error_type=type(exc).__name__)
            raise DecryptionError("stored secret could not be decrypted") from exc
