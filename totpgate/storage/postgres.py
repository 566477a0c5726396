from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_at TIMESTAMPTZ,
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_account_email_idx ON auth_account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_device (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        label TEXT NOT NULL,
        secret TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        UNIQUE (account_id, label)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_backup_code (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        token_id TEXT NOT NULL UNIQUE,
        ip_address TEXT,
        user_agent TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        login_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        logout_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id, is_active)",
)


def _account_from_row(row: dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        email_verified=row.get("email_verified", False),
        failed_attempts=row.get("failed_attempts", 0),
        last_failed_at=row.get("last_failed_at"),
        is_locked=row.get("is_locked", False),
        locked_until=row.get("locked_until"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row.get("last_login_at"),
    )


def _device_from_row(row: dict[str, Any]) -> Device:
    return Device(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        label=row["label"],
        secret=row["secret"],
        is_active=row.get("is_active", False),
        created_at=row["created_at"],
        last_used_at=row.get("last_used_at"),
    )


def _backup_code_from_row(row: dict[str, Any]) -> BackupCode:
    return BackupCode(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        code=row["code"],
        is_used=row.get("is_used", False),
        created_at=row["created_at"],
        used_at=row.get("used_at"),
    )


def _session_from_row(row: dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_id=row["token_id"],
        login_at=row["login_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        remember_me=row.get("remember_me", False),
        is_active=row.get("is_active", True),
        logout_at=row.get("logout_at"),
    )


def _valid_id(value: Optional[str]) -> bool:
    """Ids are uuid columns; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store.

    Counter increments, lock transitions, device activation and backup-code
    redemption are single conditional UPDATE statements, so concurrent
    requests are serialised by row locks instead of application code.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("credential_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(self, email: str, password_hash: str, *, now: datetime) -> Account:
        account = Account(
            id=new_id(),
            email=normalize_email(email),
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.email_verified,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _valid_id(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return _account_from_row(row) if row else None

    def register_failed_attempt(
        self, account_id: str, *, now: datetime, max_attempts: int, lockout: timedelta
    ) -> Optional[Account]:
        if not _valid_id(account_id):
            return None
        # Right-hand sides see the pre-update row, so the threshold test uses the new count
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET failed_attempts = failed_attempts + 1,
                    last_failed_at = %(now)s,
                    is_locked = is_locked OR failed_attempts + 1 >= %(max_attempts)s,
                    locked_until = CASE
                        WHEN failed_attempts + 1 >= %(max_attempts)s THEN %(locked_until)s
                        ELSE locked_until
                    END,
                    updated_at = %(now)s
                WHERE id = %(id)s
                RETURNING *
                """,
                {
                    "id": account_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "locked_until": now + lockout,
                },
            ).fetchone()
        return _account_from_row(row) if row else None

    def reset_failed_attempts(self, account_id: str, *, now: datetime) -> Optional[Account]:
        if not _valid_id(account_id):
            return None
        # A lock recorded by a concurrent failure wins over this success
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET failed_attempts = 0, last_failed_at = NULL, updated_at = %(now)s
                WHERE id = %(id)s
                  AND NOT (is_locked AND locked_until IS NOT NULL AND locked_until > %(now)s)
                RETURNING *
                """,
                {"id": account_id, "now": now},
            ).fetchone()
        return _account_from_row(row) if row else None

    def clear_lock(self, account_id: str, *, now: datetime) -> Optional[Account]:
        if not _valid_id(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET is_locked = FALSE, locked_until = NULL, failed_attempts = 0,
                    last_failed_at = NULL, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, account_id),
            ).fetchone()
        return _account_from_row(row) if row else None

    def touch_last_login(self, account_id: str, *, now: datetime) -> None:
        if not _valid_id(account_id):
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_account SET last_login_at = %s, updated_at = %s WHERE id = %s",
                (now, now, account_id),
            )

    def delete_account(self, account_id: str) -> bool:
        if not _valid_id(account_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_account WHERE id = %s", (account_id,))
            return result.rowcount > 0

    # devices
    def create_device(self, device: Device, *, max_devices: int) -> Device:
        if not _valid_id(device.account_id):
            raise ConstraintViolation("account does not exist", {"account_id": device.account_id})
        try:
            with self._connect() as conn:
                # Lock the owner row so concurrent binds count devices one at a time
                owner = conn.execute(
                    "SELECT id FROM auth_account WHERE id = %s FOR UPDATE",
                    (device.account_id,),
                ).fetchone()
                if not owner:
                    raise ConstraintViolation(
                        "account does not exist", {"account_id": device.account_id}
                    )
                duplicate = conn.execute(
                    "SELECT 1 FROM auth_device WHERE account_id = %s AND label = %s",
                    (device.account_id, device.label),
                ).fetchone()
                if duplicate:
                    raise ConstraintViolation("device label already exists", {"field": "label"})
                counted = conn.execute(
                    "SELECT COUNT(*) AS total FROM auth_device WHERE account_id = %s",
                    (device.account_id,),
                ).fetchone()
                if counted["total"] >= max_devices:
                    raise ConstraintViolation("device limit reached", {"field": "device_count"})
                conn.execute(
                    """
                    INSERT INTO auth_device (id, account_id, label, secret, is_active, created_at, last_used_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        device.id,
                        device.account_id,
                        device.label,
                        device.secret,
                        device.is_active,
                        device.created_at,
                        device.last_used_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("device label already exists", {"field": "label"})
        return device

    def get_device(self, device_id: str) -> Optional[Device]:
        if not _valid_id(device_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_device WHERE id = %s", (device_id,)
            ).fetchone()
        return _device_from_row(row) if row else None

    def get_device_by_label(self, account_id: str, label: str) -> Optional[Device]:
        if not _valid_id(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_device WHERE account_id = %s AND label = %s",
                (account_id, label),
            ).fetchone()
        return _device_from_row(row) if row else None

    def list_devices(self, account_id: str, *, active_only: bool = False) -> List[Device]:
        if not _valid_id(account_id):
            return []
        query = "SELECT * FROM auth_device WHERE account_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY created_at ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
        return [_device_from_row(row) for row in rows]

    def count_devices(self, account_id: str, *, active_only: bool = False) -> int:
        if not _valid_id(account_id):
            return 0
        query = "SELECT COUNT(*) AS total FROM auth_device WHERE account_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            row = conn.execute(query, (account_id,)).fetchone()
        return int(row["total"]) if row else 0

    def activate_device(self, device_id: str, *, now: datetime) -> bool:
        if not _valid_id(device_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_device SET is_active = TRUE, last_used_at = %s
                WHERE id = %s AND is_active = FALSE
                """,
                (now, device_id),
            )
            return result.rowcount > 0

    def touch_device(self, device_id: str, *, now: datetime) -> None:
        if not _valid_id(device_id):
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_device SET last_used_at = %s WHERE id = %s", (now, device_id)
            )

    def delete_device(self, device_id: str) -> bool:
        if not _valid_id(device_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_device WHERE id = %s", (device_id,))
            return result.rowcount > 0

    # backup codes
    def replace_backup_codes(self, account_id: str, codes: Sequence[BackupCode]) -> None:
        if not _valid_id(account_id):
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        try:
            # One pooled connection block is one transaction
            with self._connect() as conn:
                conn.execute("DELETE FROM auth_backup_code WHERE account_id = %s", (account_id,))
                for code in codes:
                    conn.execute(
                        """
                        INSERT INTO auth_backup_code (id, account_id, code, is_used, created_at, used_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            code.id,
                            code.account_id,
                            code.code,
                            code.is_used,
                            code.created_at,
                            code.used_at,
                        ),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]:
        if not _valid_id(account_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_backup_code
                WHERE account_id = %s AND is_used = FALSE
                ORDER BY created_at ASC, id ASC
                """,
                (account_id,),
            ).fetchall()
        return [_backup_code_from_row(row) for row in rows]

    def count_unused_backup_codes(self, account_id: str) -> int:
        if not _valid_id(account_id):
            return 0
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM auth_backup_code WHERE account_id = %s AND is_used = FALSE",
                (account_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def mark_backup_code_used(self, code_id: str, *, now: datetime) -> bool:
        if not _valid_id(code_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_backup_code SET is_used = TRUE, used_at = %s
                WHERE id = %s AND is_used = FALSE
                """,
                (now, code_id),
            )
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        if not _valid_id(session.account_id):
            raise ConstraintViolation("session account missing", {"account_id": session.account_id})
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, token_id, ip_address, user_agent, remember_me, login_at, expires_at, logout_at, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.token_id,
                        session.ip_address,
                        session.user_agent,
                        session.remember_me,
                        session.login_at,
                        session.expires_at,
                        session.logout_at,
                        session.is_active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session account missing", {"account_id": session.account_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _valid_id(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_id = %s", (token_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def list_active_sessions(self, account_id: str, *, now: datetime) -> List[Session]:
        if not _valid_id(account_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND is_active AND expires_at > %s
                ORDER BY login_at DESC, id DESC
                """,
                (account_id, now),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def deactivate_session(
        self,
        account_id: str,
        *,
        now: datetime,
        token_id: str | None = None,
        session_id: str | None = None,
    ) -> int:
        if token_id is None and session_id is None:
            return 0
        if not _valid_id(account_id) or (session_id is not None and not _valid_id(session_id)):
            return 0
        clauses = ["account_id = %s", "is_active"]
        params: list[Any] = [now, account_id]
        if token_id is not None:
            clauses.append("token_id = %s")
            params.append(token_id)
        if session_id is not None:
            clauses.append("id = %s")
            params.append(session_id)
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET is_active = FALSE, logout_at = %s WHERE "
                + " AND ".join(clauses),
                tuple(params),
            )
            return result.rowcount

    def deactivate_account_sessions(self, account_id: str, *, now: datetime) -> int:
        if not _valid_id(account_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, logout_at = %s
                WHERE account_id = %s AND is_active
                """,
                (now, account_id),
            )
            return result.rowcount

    def deactivate_expired_sessions(self, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, logout_at = %s
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
            return result.rowcount
