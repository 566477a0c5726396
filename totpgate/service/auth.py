from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from totpgate.clock import Clock, SystemClock
from totpgate.config import Settings
from totpgate.logging import get_logger
from totpgate.service.backup_codes import BackupCodeManager
from totpgate.service.devices import DeviceEnrollment, DeviceManager
from totpgate.service.errors import (
    ConflictError,
    CredentialError,
    CryptoError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from totpgate.service.lockout import AccountLockout
from totpgate.service.passwords import Argon2PasswordHasher
from totpgate.service.sessions import SessionManager
from totpgate.storage.errors import ConstraintViolation
from totpgate.storage.models import Account, CredentialStore, Session, normalize_email

logger = get_logger(__name__)

# Caller-facing messages; they never reveal whether an account exists
MSG_INVALID_CREDENTIALS = "Invalid email or password."
MSG_ACCOUNT_LOCKED = "Account is temporarily locked. Try again later."
MSG_SECOND_FACTOR_REQUIRED = "Enter the code from your authenticator app."
MSG_SECOND_FACTOR_INVALID = "Invalid verification code."
MSG_AUTHENTICATED = "Signed in."
MSG_INTERNAL_ERROR = "Something went wrong. Please try again later."


class AuthStatus(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    SECOND_FACTOR_REQUIRED = "second_factor_required"
    SECOND_FACTOR_INVALID = "second_factor_invalid"
    AUTHENTICATED = "authenticated"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class AuthResult:
    status: AuthStatus
    message: str
    account_id: Optional[str] = None
    token: Optional[str] = None
    session: Optional[Session] = None
    remaining_attempts: Optional[int] = None
    locked_until: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status is AuthStatus.AUTHENTICATED


@dataclass(frozen=True)
class AccountInfo:
    id: str
    email: str
    email_verified: bool
    created_at: datetime
    last_login_at: datetime
    has_totp_enabled: bool
    active_devices_count: int


class AuthService:
    """Password plus TOTP sign-in flow.

    ``login`` and ``complete_second_factor`` never raise: every outcome,
    including infrastructure faults, comes back as an :class:`AuthResult`.
    The account-management helpers raise :class:`ServiceError` subclasses.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        lockout: AccountLockout,
        devices: DeviceManager,
        backup_codes: BackupCodeManager,
        sessions: SessionManager,
        hasher: Argon2PasswordHasher,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.lockout = lockout
        self.devices = devices
        self.backup_codes = backup_codes
        self.sessions = sessions
        self.hasher = hasher
        self.clock = clock or SystemClock()
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock.now()

    # sign-in flow
    def login(
        self,
        email: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
        *,
        remember_me: bool = False,
    ) -> AuthResult:
        try:
            return self._login(email, password, ip, user_agent, remember_me)
        except Exception as exc:
            return self._internal_error("login", exc)

    def _login(
        self,
        email: str,
        password: str,
        ip: str | None,
        user_agent: str | None,
        remember_me: bool,
    ) -> AuthResult:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            self.hasher.burn_verification(password or "")
            self.logger.info("login_unknown_account", ip=ip)
            return AuthResult(AuthStatus.INVALID_CREDENTIALS, MSG_INVALID_CREDENTIALS)

        status = self.lockout.check_and_maybe_transition(account)
        if status.locked:
            self.logger.info("login_rejected_locked", account_id=account.id, ip=ip)
            return AuthResult(
                AuthStatus.ACCOUNT_LOCKED,
                MSG_ACCOUNT_LOCKED,
                locked_until=status.locked_until,
            )
        account = status.account or account

        if not self.hasher.verify(password or "", account.password_hash):
            outcome = self.lockout.record_failure(account)
            return AuthResult(
                AuthStatus.INVALID_CREDENTIALS,
                MSG_INVALID_CREDENTIALS,
                remaining_attempts=outcome.remaining_attempts,
                locked_until=outcome.locked_until,
            )

        settled = self.lockout.record_success(account)
        if settled.locked:
            return AuthResult(
                AuthStatus.ACCOUNT_LOCKED,
                MSG_ACCOUNT_LOCKED,
                locked_until=settled.locked_until,
            )
        if self.devices.active_device_count(account.id) > 0:
            self.logger.info("login_second_factor_required", account_id=account.id)
            return AuthResult(
                AuthStatus.SECOND_FACTOR_REQUIRED,
                MSG_SECOND_FACTOR_REQUIRED,
                account_id=account.id,
            )
        return self._authenticated(account.id, remember_me, ip, user_agent)

    def complete_second_factor(
        self,
        account_id: str,
        code: str,
        is_backup_code: bool = False,
        ip: str | None = None,
        user_agent: str | None = None,
        *,
        remember_me: bool = False,
    ) -> AuthResult:
        try:
            account = self.store.get_account(account_id)
            if account is None:
                self.logger.info("second_factor_unknown_account")
                return AuthResult(AuthStatus.SECOND_FACTOR_INVALID, MSG_SECOND_FACTOR_INVALID)
            status = self.lockout.check_and_maybe_transition(account)
            if status.locked:
                return AuthResult(
                    AuthStatus.ACCOUNT_LOCKED,
                    MSG_ACCOUNT_LOCKED,
                    locked_until=status.locked_until,
                )
            if is_backup_code:
                verified = self.backup_codes.redeem(account_id, code)
            else:
                verified = self.devices.verify_code(account_id, code)
            if not verified:
                return AuthResult(
                    AuthStatus.SECOND_FACTOR_INVALID,
                    MSG_SECOND_FACTOR_INVALID,
                    account_id=account_id,
                )
            return self._authenticated(account_id, remember_me, ip, user_agent)
        except Exception as exc:
            return self._internal_error("complete_second_factor", exc, account_id=account_id)

    def _authenticated(
        self, account_id: str, remember_me: bool, ip: str | None, user_agent: str | None
    ) -> AuthResult:
        issued = self.sessions.issue(account_id, remember_me, ip, user_agent)
        self.store.touch_last_login(account_id, now=self._now())
        self.logger.info("login_succeeded", account_id=account_id, session_id=issued.session.id)
        return AuthResult(
            AuthStatus.AUTHENTICATED,
            MSG_AUTHENTICATED,
            account_id=account_id,
            token=issued.token,
            session=issued.session,
        )

    def _internal_error(self, operation: str, exc: Exception, **context) -> AuthResult:
        if isinstance(exc, CryptoError):
            # Corrupt or tampered secret material, not a wrong code
            self.logger.error(
                "auth_crypto_failure",
                operation=operation,
                error_type=type(exc).__name__,
                **context,
            )
        else:
            self.logger.exception("auth_internal_error", operation=operation, **context)
        return AuthResult(AuthStatus.INTERNAL_ERROR, MSG_INTERNAL_ERROR)

    # account management
    def register(self, email: str, password: str) -> Account:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        try:
            account = self.store.create_account(
                normalized, self.hasher.hash(password), now=self._now()
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("account_registered", account_id=account.id)
        return account

    def account_info(self, account_id: str) -> AccountInfo:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        active_devices = self.devices.active_device_count(account_id)
        return AccountInfo(
            id=account.id,
            email=account.email,
            email_verified=account.email_verified,
            created_at=account.created_at,
            last_login_at=account.last_login_at or account.created_at,
            has_totp_enabled=active_devices > 0,
            active_devices_count=active_devices,
        )

    def logout(self, token: str, all_devices: bool = False) -> bool:
        claims = self.sessions.decode(token)
        if not claims:
            return False
        return self.sessions.revoke(
            str(claims.get("sub")), token_id=claims.get("jti"), all_devices=all_devices
        )

    def enroll_device(self, email: str, password: str, label: str) -> DeviceEnrollment:
        """Bind a new device after re-checking the account password."""
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            self.hasher.burn_verification(password or "")
            raise CredentialError(MSG_INVALID_CREDENTIALS)
        status = self.lockout.check_and_maybe_transition(account)
        if status.locked:
            raise LockedError(MSG_ACCOUNT_LOCKED, locked_until=status.locked_until)
        account = status.account or account
        if not self.hasher.verify(password or "", account.password_hash):
            outcome = self.lockout.record_failure(account)
            raise CredentialError(
                MSG_INVALID_CREDENTIALS,
                remaining_attempts=outcome.remaining_attempts,
                locked_until=outcome.locked_until,
            )
        settled = self.lockout.record_success(account)
        if settled.locked:
            raise LockedError(MSG_ACCOUNT_LOCKED, locked_until=settled.locked_until)
        return self.devices.bind_device(account.id, label)

    def reset_account_lock(self, account_id: str) -> Account:
        return self.lockout.reset(account_id)
