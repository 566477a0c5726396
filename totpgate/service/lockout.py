from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from totpgate.clock import Clock, SystemClock
from totpgate.config import Settings
from totpgate.logging import get_logger
from totpgate.service.errors import InternalError, NotFoundError
from totpgate.storage.models import Account, CredentialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    locked_until: Optional[datetime] = None
    account: Optional[Account] = None


@dataclass(frozen=True)
class FailureOutcome:
    failed_attempts: int
    remaining_attempts: int
    locked_until: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class AccountLockout:
    """Failed-attempt counting and time-boxed lockout per account.

    States are ``Active`` and ``Locked``. Unlocking is lazy: an expired lock
    is cleared by :meth:`check_and_maybe_transition`, which every credential
    check must call first.
    """

    def __init__(self, store: CredentialStore, settings: Settings, clock: Clock | None = None) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger

    @property
    def max_attempts(self) -> int:
        return self.settings.max_failed_attempts

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_duration_minutes)

    def check_and_maybe_transition(self, account: Account) -> LockStatus:
        now = self.clock.now()
        if account.lock_active(now):
            return LockStatus(True, account.locked_until, account)
        if account.lock_expired(now):
            refreshed = self.store.clear_lock(account.id, now=now) or account
            self.logger.info("account_lock_expired", account_id=account.id)
            return LockStatus(False, None, refreshed)
        return LockStatus(False, None, account)

    def record_failure(self, account: Account) -> FailureOutcome:
        updated = self.store.register_failed_attempt(
            account.id,
            now=self.clock.now(),
            max_attempts=self.max_attempts,
            lockout=self.lockout_duration,
        )
        if updated is None:
            raise InternalError("account vanished while recording a failed attempt")
        remaining = max(self.max_attempts - updated.failed_attempts, 0)
        if updated.is_locked and updated.locked_until is not None:
            self.logger.warning(
                "account_locked",
                account_id=account.id,
                failed_attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
            return FailureOutcome(updated.failed_attempts, 0, updated.locked_until)
        self.logger.info(
            "login_failed",
            account_id=account.id,
            failed_attempts=updated.failed_attempts,
            remaining_attempts=remaining,
        )
        return FailureOutcome(updated.failed_attempts, remaining)

    def record_success(self, account: Account) -> LockStatus:
        """Clear the counter after a correct password.

        The reset is conditional in the store, so failures recorded by
        concurrent requests since ``account`` was read are never lost: if
        they locked the account, the lock stands and is reported here.
        """
        now = self.clock.now()
        updated = self.store.reset_failed_attempts(account.id, now=now)
        if updated is not None:
            return LockStatus(False, None, updated)
        current = self.store.get_account(account.id)
        if current is None:
            raise InternalError("account vanished while recording a successful attempt")
        self.logger.info(
            "login_success_lost_to_lock",
            account_id=account.id,
            locked_until=current.locked_until.isoformat() if current.locked_until else None,
        )
        return LockStatus(True, current.locked_until, current)

    def reset(self, account_id: str) -> Account:
        """Administrative unlock: clears the lock and every counter."""
        account = self.store.clear_lock(account_id, now=self.clock.now())
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self.logger.info("account_lock_reset", account_id=account_id)
        return account
