from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Sequence


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    email_verified: bool = False
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    is_locked: bool = False
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    def lock_active(self, now: datetime) -> bool:
        """True while the lock flag is set and its expiry lies in the future."""
        return bool(self.is_locked and self.locked_until and self.locked_until > now)

    def lock_expired(self, now: datetime) -> bool:
        """True when the lock flag is still set but its expiry has passed."""
        return self.is_locked and not self.lock_active(now)


@dataclass
class Device:
    id: str
    account_id: str
    label: str
    secret: str  # vault ciphertext
    is_active: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: Optional[datetime] = None

    @classmethod
    def pending(
        cls, account_id: str, label: str, encrypted_secret: str, *, now: datetime
    ) -> "Device":
        return cls(
            id=new_id(),
            account_id=account_id,
            label=label,
            secret=encrypted_secret,
            is_active=False,
            created_at=now,
        )


@dataclass
class BackupCode:
    id: str
    account_id: str
    code: str  # vault ciphertext
    is_used: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    used_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    account_id: str
    token_id: str
    login_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    is_active: bool = True
    logout_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        *,
        now: datetime,
        ttl: timedelta,
        ip_address: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> "Session":
        return cls(
            id=new_id(),
            account_id=account_id,
            token_id=uuid.uuid4().hex,
            login_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at


class CredentialStore(Protocol):
    """Persistence contract shared by the memory and Postgres backends.

    Methods that change counters or flags are atomic at the store so that
    concurrent requests never lose an update.
    """

    # accounts
    def create_account(self, email: str, password_hash: str, *, now: datetime) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def register_failed_attempt(
        self, account_id: str, *, now: datetime, max_attempts: int, lockout: timedelta
    ) -> Optional[Account]: ...

    # None when the account is missing or holds an unexpired lock
    def reset_failed_attempts(self, account_id: str, *, now: datetime) -> Optional[Account]: ...

    def clear_lock(self, account_id: str, *, now: datetime) -> Optional[Account]: ...

    def touch_last_login(self, account_id: str, *, now: datetime) -> None: ...

    def delete_account(self, account_id: str) -> bool: ...

    # devices
    def create_device(self, device: Device, *, max_devices: int) -> Device: ...

    def get_device(self, device_id: str) -> Optional[Device]: ...

    def get_device_by_label(self, account_id: str, label: str) -> Optional[Device]: ...

    def list_devices(self, account_id: str, *, active_only: bool = False) -> List[Device]: ...

    def count_devices(self, account_id: str, *, active_only: bool = False) -> int: ...

    def activate_device(self, device_id: str, *, now: datetime) -> bool: ...

    def touch_device(self, device_id: str, *, now: datetime) -> None: ...

    def delete_device(self, device_id: str) -> bool: ...

    # backup codes
    def replace_backup_codes(self, account_id: str, codes: Sequence[BackupCode]) -> None: ...

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]: ...

    def count_unused_backup_codes(self, account_id: str) -> int: ...

    def mark_backup_code_used(self, code_id: str, *, now: datetime) -> bool: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]: ...

    def list_active_sessions(self, account_id: str, *, now: datetime) -> List[Session]: ...

    def deactivate_session(
        self, account_id: str, *, now: datetime, token_id: str | None = None, session_id: str | None = None
    ) -> int: ...

    def deactivate_account_sessions(self, account_id: str, *, now: datetime) -> int: ...

    def deactivate_expired_sessions(self, *, now: datetime) -> int: ...
