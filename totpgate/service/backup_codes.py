from __future__ import annotations

import base64
import hmac
import secrets
from typing import List

from totpgate.clock import Clock, SystemClock
from totpgate.config import Settings
from totpgate.logging import get_logger
from totpgate.service.errors import NotFoundError, ValidationError
from totpgate.service.vault import SecretVault
from totpgate.storage.errors import ConstraintViolation
from totpgate.storage.models import BackupCode, CredentialStore, new_id

logger = get_logger(__name__)

CODE_LENGTH = 8
_DRAW_BYTES = 5


def _new_code() -> str:
    # A 5-byte draw encodes to at most 7 usable characters, so keep drawing
    code = ""
    while len(code) < CODE_LENGTH:
        raw = base64.b64encode(secrets.token_bytes(_DRAW_BYTES)).decode("ascii")
        code += raw.replace("+", "").replace("/", "").replace("=", "").upper()
    return code[:CODE_LENGTH]


def normalize_code(code: str) -> str:
    return (code or "").strip().replace(" ", "").replace("-", "").upper()


class BackupCodeManager:
    def __init__(
        self,
        store: CredentialStore,
        vault: SecretVault,
        settings: Settings,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.vault = vault
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger

    def generate(self, account_id: str, count: int | None = None) -> List[str]:
        """Replace every code for the account with ``count`` fresh ones.

        The plaintext codes are returned once; only ciphertext is stored.
        """
        total = self.settings.backup_code_default_count if count is None else count
        low, high = self.settings.backup_code_min, self.settings.backup_code_max
        if not low <= total <= high:
            raise ValidationError(
                f"backup code count must be between {low} and {high}",
                detail={"count": total},
            )
        now = self.clock.now()
        plaintext: List[str] = []
        rows: List[BackupCode] = []
        for _ in range(total):
            code = _new_code()
            plaintext.append(code)
            rows.append(
                BackupCode(
                    id=new_id(),
                    account_id=account_id,
                    code=self.vault.encrypt(code),
                    created_at=now,
                )
            )
        try:
            self.store.replace_backup_codes(account_id, rows)
        except ConstraintViolation as exc:
            raise NotFoundError("account not found", detail=exc.detail) from exc
        self.logger.info("backup_codes_generated", account_id=account_id, count=total)
        return plaintext

    def redeem(self, account_id: str, code: str) -> bool:
        supplied = normalize_code(code)
        if len(supplied) != CODE_LENGTH or not supplied.isascii() or not supplied.isalnum():
            return False
        for row in self.store.list_unused_backup_codes(account_id):
            if not hmac.compare_digest(self.vault.decrypt(row.code), supplied):
                continue
            if self.store.mark_backup_code_used(row.id, now=self.clock.now()):
                self.logger.info("backup_code_redeemed", account_id=account_id)
                return True
            # Lost the race to a concurrent redemption of the same code
            break
        return False

    def remaining(self, account_id: str) -> int:
        return self.store.count_unused_backup_codes(account_id)
