from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from totpgate.logging import get_logger
from totpgate.storage.errors import ConstraintViolation
from totpgate.storage.models import (
    Account,
    BackupCode,
    Device,
    Session,
    new_id,
    normalize_email,
)


class MemoryStore:
    """In-process credential store.

    Every read returns a copy and every mutation runs under one re-entrant
    lock, so read-modify-write sequences such as the failed-attempt counter
    are atomic. When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/credential_store.json`` after each mutation and
    reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.devices: Dict[str, Device] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # accounts
    def create_account(self, email: str, password_hash: str, *, now: datetime) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(acc.email == normalized for acc in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return replace(account)
        return None

    def register_failed_attempt(
        self, account_id: str, *, now: datetime, max_attempts: int, lockout: timedelta
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts += 1
            account.last_failed_at = now
            account.updated_at = now
            if account.failed_attempts >= max_attempts:
                account.is_locked = True
                account.locked_until = now + lockout
            self._persist_state()
            return replace(account)

    def reset_failed_attempts(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.lock_active(now):
                return None
            account.failed_attempts = 0
            account.last_failed_at = None
            account.updated_at = now
            self._persist_state()
            return replace(account)

    def clear_lock(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_locked = False
            account.locked_until = None
            account.failed_attempts = 0
            account.last_failed_at = None
            account.updated_at = now
            self._persist_state()
            return replace(account)

    def touch_last_login(self, account_id: str, *, now: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_login_at = now
            account.updated_at = now
            self._persist_state()

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            for table in (self.devices, self.backup_codes, self.sessions):
                stale = [key for key, row in table.items() if row.account_id == account_id]
                for key in stale:
                    table.pop(key, None)
            self._persist_state()
            return True

    # devices
    def create_device(self, device: Device, *, max_devices: int) -> Device:
        with self._data_lock:
            if device.account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": device.account_id})
            owned = [d for d in self.devices.values() if d.account_id == device.account_id]
            if any(d.label == device.label for d in owned):
                raise ConstraintViolation("device label already exists", {"field": "label"})
            if len(owned) >= max_devices:
                raise ConstraintViolation("device limit reached", {"field": "device_count"})
            self.devices[device.id] = replace(device)
            self._persist_state()
            return replace(device)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def get_device_by_label(self, account_id: str, label: str) -> Optional[Device]:
        with self._data_lock:
            for device in self.devices.values():
                if device.account_id == account_id and device.label == label:
                    return replace(device)
        return None

    def list_devices(self, account_id: str, *, active_only: bool = False) -> List[Device]:
        with self._data_lock:
            rows = [
                replace(d)
                for d in self.devices.values()
                if d.account_id == account_id and (d.is_active or not active_only)
            ]
        rows.sort(key=lambda d: (d.created_at, d.id))
        return rows

    def count_devices(self, account_id: str, *, active_only: bool = False) -> int:
        return len(self.list_devices(account_id, active_only=active_only))

    def activate_device(self, device_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or device.is_active:
                return False
            device.is_active = True
            device.last_used_at = now
            self._persist_state()
            return True

    def touch_device(self, device_id: str, *, now: datetime) -> None:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return
            device.last_used_at = now
            self._persist_state()

    def delete_device(self, device_id: str) -> bool:
        with self._data_lock:
            removed = self.devices.pop(device_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # backup codes
    def replace_backup_codes(self, account_id: str, codes: Sequence[BackupCode]) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            stale = [cid for cid, c in self.backup_codes.items() if c.account_id == account_id]
            for cid in stale:
                self.backup_codes.pop(cid, None)
            for code in codes:
                self.backup_codes[code.id] = replace(code)
            self._persist_state()

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]:
        with self._data_lock:
            rows = [
                replace(c)
                for c in self.backup_codes.values()
                if c.account_id == account_id and not c.is_used
            ]
        rows.sort(key=lambda c: (c.created_at, c.id))
        return rows

    def count_unused_backup_codes(self, account_id: str) -> int:
        return len(self.list_unused_backup_codes(account_id))

    def mark_backup_code_used(self, code_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.is_used:
                return False
            code.is_used = True
            code.used_at = now
            self._persist_state()
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": session.account_id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token_id == token_id:
                    return replace(sess)
        return None

    def list_active_sessions(self, account_id: str, *, now: datetime) -> List[Session]:
        with self._data_lock:
            rows = [
                replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id and s.is_live(now)
            ]
        rows.sort(key=lambda s: (s.login_at, s.id), reverse=True)
        return rows

    def deactivate_session(
        self,
        account_id: str,
        *,
        now: datetime,
        token_id: str | None = None,
        session_id: str | None = None,
    ) -> int:
        with self._data_lock:
            affected = 0
            for sess in self.sessions.values():
                if sess.account_id != account_id or not sess.is_active:
                    continue
                if token_id is not None and sess.token_id != token_id:
                    continue
                if session_id is not None and sess.id != session_id:
                    continue
                if token_id is None and session_id is None:
                    continue
                sess.is_active = False
                sess.logout_at = now
                affected += 1
            if affected:
                self._persist_state()
            return affected

    def deactivate_account_sessions(self, account_id: str, *, now: datetime) -> int:
        with self._data_lock:
            affected = 0
            for sess in self.sessions.values():
                if sess.account_id == account_id and sess.is_active:
                    sess.is_active = False
                    sess.logout_at = now
                    affected += 1
            if affected:
                self._persist_state()
            return affected

    def deactivate_expired_sessions(self, *, now: datetime) -> int:
        with self._data_lock:
            affected = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    sess.logout_at = now
                    affected += 1
            if affected:
                self._persist_state()
            return affected

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "devices": [self._serialize_device(d) for d in self.devices.values()],
            "backup_codes": [self._serialize_backup_code(c) for c in self.backup_codes.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])}
        self.devices = {d["id"]: self._deserialize_device(d) for d in data.get("devices", [])}
        self.backup_codes = {
            c["id"]: self._deserialize_backup_code(c) for c in data.get("backup_codes", [])
        }
        self.sessions = {s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])}
        self.logger.info(
            "credential_store_loaded",
            accounts=len(self.accounts),
            devices=len(self.devices),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "email_verified": account.email_verified,
            "failed_attempts": account.failed_attempts,
            "last_failed_at": self._serialize_datetime(account.last_failed_at),
            "is_locked": account.is_locked,
            "locked_until": self._serialize_datetime(account.locked_until),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            email_verified=data.get("email_verified", False),
            failed_attempts=int(data.get("failed_attempts", 0)),
            last_failed_at=self._deserialize_datetime(data.get("last_failed_at")),
            is_locked=data.get("is_locked", False),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_device(self, device: Device) -> dict:
        return {
            "id": device.id,
            "account_id": device.account_id,
            "label": device.label,
            "secret": device.secret,
            "is_active": device.is_active,
            "created_at": self._serialize_datetime(device.created_at),
            "last_used_at": self._serialize_datetime(device.last_used_at),
        }

    def _deserialize_device(self, data: dict) -> Device:
        return Device(
            id=data["id"],
            account_id=data["account_id"],
            label=data["label"],
            secret=data["secret"],
            is_active=data.get("is_active", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )

    def _serialize_backup_code(self, code: BackupCode) -> dict:
        return {
            "id": code.id,
            "account_id": code.account_id,
            "code": code.code,
            "is_used": code.is_used,
            "created_at": self._serialize_datetime(code.created_at),
            "used_at": self._serialize_datetime(code.used_at),
        }

    def _deserialize_backup_code(self, data: dict) -> BackupCode:
        return BackupCode(
            id=data["id"],
            account_id=data["account_id"],
            code=data["code"],
            is_used=data.get("is_used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "token_id": session.token_id,
            "login_at": self._serialize_datetime(session.login_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "remember_me": session.remember_me,
            "is_active": session.is_active,
            "logout_at": self._serialize_datetime(session.logout_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            token_id=data["token_id"],
            login_at=self._deserialize_datetime(data["login_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            remember_me=data.get("remember_me", False),
            is_active=data.get("is_active", True),
            logout_at=self._deserialize_datetime(data.get("logout_at")),
        )
