from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from totpgate.clock import Clock, SystemClock
from totpgate.logging import get_logger
from totpgate.service.errors import InvalidSecretError

logger = get_logger(__name__)

TIME_STEP_SECONDS = 30
CODE_DIGITS = 6
SECRET_BYTES = 20


@dataclass(frozen=True)
class TOTPMatch:
    valid: bool
    matched_step: Optional[int] = None

    def __bool__(self) -> bool:
        return self.valid


class TOTPEngine:
    """RFC 6238 time-based codes (HMAC-SHA1, 30 second steps, 6 digits)."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii")

    @staticmethod
    def time_step(at: datetime) -> int:
        return int(at.timestamp()) // TIME_STEP_SECONDS

    @staticmethod
    def _decode_secret(secret: str) -> bytes:
        cleaned = (secret or "").replace(" ", "").upper()
        if not cleaned:
            raise InvalidSecretError("TOTP secret is empty")
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=False)
        except (binascii.Error, ValueError) as exc:
            raise InvalidSecretError("TOTP secret is not valid base32") from exc

    @staticmethod
    def _code_for_step(key: bytes, step: int) -> str:
        digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**CODE_DIGITS
        )
        return str(code_int).zfill(CODE_DIGITS)

    def generate(self, secret: str, at: datetime | None = None) -> str:
        key = self._decode_secret(secret)
        moment = at or self.clock.now()
        return self._code_for_step(key, self.time_step(moment))

    def verify(
        self,
        secret: str,
        code: str,
        tolerance_minutes: int,
        at: datetime | None = None,
    ) -> TOTPMatch:
        """Check ``code`` against every step within the tolerance window.

        The window spans ``tolerance_minutes * 2`` steps either side of the
        current step and is scanned from the oldest step forward; the first
        match wins. Malformed secrets raise :class:`InvalidSecretError`.
        """
        key = self._decode_secret(secret)
        supplied = (code or "").strip()
        if len(supplied) != CODE_DIGITS or not supplied.isascii() or not supplied.isdigit():
            return TOTPMatch(False)
        windows = max(tolerance_minutes, 0) * 2
        current = self.time_step(at or self.clock.now())
        for step in range(current - windows, current + windows + 1):
            if step < 0:
                continue
            if hmac.compare_digest(self._code_for_step(key, step), supplied):
                return TOTPMatch(True, step)
        return TOTPMatch(False)
