"""Unit tests for PostgresStore SQL and row mapping, without a database."""

from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from totpgate.logging import get_logger
from totpgate.storage.errors import ConstraintViolation
from totpgate.storage.models import Device
from totpgate.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
ACC = "5b1c9d8e-0000-4000-8000-000000000001"
DEV = "5b1c9d8e-0000-4000-8000-0000000000d1"
CODE_ID = "5b1c9d8e-0000-4000-8000-0000000000c1"


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays queued cursors (or exceptions) in order."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(responses)

    def connection(self):
        return self.conn


def make_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger(__name__)
    return store


def account_row(**overrides):
    row = {
        "id": ACC,
        "email": "a@x.com",
        "password_hash": "hash",
        "email_verified": False,
        "failed_attempts": 0,
        "last_failed_at": None,
        "is_locked": False,
        "locked_until": None,
        "created_at": NOW,
        "updated_at": NOW,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


class TestAccounts:
    def test_register_failed_attempt_is_single_atomic_update(self):
        locked_until = NOW + timedelta(minutes=15)
        pool = FakePool(
            FakeCursor([account_row(failed_attempts=5, is_locked=True, locked_until=locked_until)])
        )
        store = make_store(pool)

        account = store.register_failed_attempt(
            ACC, now=NOW, max_attempts=5, lockout=timedelta(minutes=15)
        )

        assert len(pool.conn.statements) == 1
        sql, params = pool.conn.statements[0]
        assert sql.startswith("UPDATE auth_account SET failed_attempts = failed_attempts + 1")
        assert sql.endswith("RETURNING *")
        assert params == {"id": ACC, "now": NOW, "max_attempts": 5, "locked_until": locked_until}
        assert account.failed_attempts == 5
        assert account.is_locked and account.locked_until == locked_until

    def test_register_failed_attempt_missing_account(self):
        store = make_store(FakePool(FakeCursor([])))
        assert store.register_failed_attempt(
            "5b1c9d8e-0000-4000-8000-00000000ffff", now=NOW, max_attempts=5, lockout=timedelta(minutes=15)
        ) is None

    def test_reset_failed_attempts_skips_a_live_lock(self):
        pool = FakePool(FakeCursor([]))
        store = make_store(pool)

        assert store.reset_failed_attempts(ACC, now=NOW) is None
        sql, params = pool.conn.statements[0]
        assert "AND NOT (is_locked AND locked_until IS NOT NULL AND locked_until > %(now)s)" in sql
        assert params == {"id": ACC, "now": NOW}

    def test_duplicate_email_maps_to_constraint_violation(self):
        store = make_store(FakePool(errors.UniqueViolation("duplicate key")))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account("A@X.com", "hash", now=NOW)
        assert excinfo.value.detail == {"field": "email"}

    def test_email_lookup_is_normalised(self):
        pool = FakePool(FakeCursor([account_row()]))
        account = make_store(pool).get_account_by_email("  A@X.COM ")

        assert pool.conn.statements[0][1] == ("a@x.com",)
        assert account.email == "a@x.com"


class TestDevices:
    def test_create_device_enforces_cap_under_row_lock(self):
        pool = FakePool(
            FakeCursor([{"id": ACC}]),
            FakeCursor([]),
            FakeCursor([{"total": 2}]),
        )
        store = make_store(pool)

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_device(Device.pending(ACC, "Laptop", "ct", now=NOW), max_devices=2)

        assert excinfo.value.detail == {"field": "device_count"}
        assert pool.conn.statements[0][0].endswith("FOR UPDATE")
        assert not any(sql.startswith("INSERT") for sql, _ in pool.conn.statements)

    def test_create_device_label_conflict(self):
        pool = FakePool(FakeCursor([{"id": ACC}]), FakeCursor([{"?column?": 1}]))
        with pytest.raises(ConstraintViolation) as excinfo:
            make_store(pool).create_device(
                Device.pending(ACC, "Phone", "ct", now=NOW), max_devices=2
            )
        assert excinfo.value.detail == {"field": "label"}

    def test_create_device_inserts_when_under_cap(self):
        pool = FakePool(FakeCursor([{"id": ACC}]), FakeCursor([]), FakeCursor([{"total": 1}]))
        device = Device.pending(ACC, "Phone", "ct", now=NOW)

        assert make_store(pool).create_device(device, max_devices=2) is device
        sql, params = pool.conn.statements[-1]
        assert sql.startswith("INSERT INTO auth_device")
        assert params[:4] == (device.id, ACC, "Phone", "ct")

    def test_activate_only_pending_devices(self):
        pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
        store = make_store(pool)

        assert store.activate_device(DEV, now=NOW) is True
        assert store.activate_device(DEV, now=NOW) is False
        assert "AND is_active = FALSE" in pool.conn.statements[0][0]

    def test_list_active_devices_ordered_by_creation(self):
        pool = FakePool(FakeCursor([]))
        make_store(pool).list_devices(ACC, active_only=True)
        sql, _ = pool.conn.statements[0]
        assert sql.endswith("AND is_active ORDER BY created_at ASC, id ASC")


class TestBackupCodesAndSessions:
    def test_mark_used_is_compare_and_swap(self):
        pool = FakePool(FakeCursor(rowcount=0))
        assert make_store(pool).mark_backup_code_used(CODE_ID, now=NOW) is False
        assert "AND is_used = FALSE" in pool.conn.statements[0][0]

    def test_replace_backup_codes_deletes_then_inserts_in_one_block(self):
        from totpgate.storage.models import BackupCode

        codes = [BackupCode(id=f"c{i}", account_id=ACC, code="ct", created_at=NOW) for i in range(3)]
        pool = FakePool()
        make_store(pool).replace_backup_codes(ACC, codes)

        statements = [sql for sql, _ in pool.conn.statements]
        assert statements[0] == "DELETE FROM auth_backup_code WHERE account_id = %s"
        assert sum(sql.startswith("INSERT INTO auth_backup_code") for sql in statements) == 3

    def test_deactivate_by_token_id(self):
        pool = FakePool(FakeCursor(rowcount=1))
        affected = make_store(pool).deactivate_session(ACC, now=NOW, token_id="tok")

        sql, params = pool.conn.statements[0]
        assert affected == 1
        assert sql == (
            "UPDATE auth_session SET is_active = FALSE, logout_at = %s "
            "WHERE account_id = %s AND is_active AND token_id = %s"
        )
        assert params == (NOW, ACC, "tok")

    def test_deactivate_without_selector_touches_nothing(self):
        store = make_store(DummyPool())
        assert store.deactivate_session(ACC, now=NOW) == 0

    def test_active_sessions_newest_first_with_id_tiebreak(self):
        pool = FakePool(FakeCursor([]))
        make_store(pool).list_active_sessions(ACC, now=NOW)
        assert pool.conn.statements[0][0].endswith("ORDER BY login_at DESC, id DESC")

    def test_session_row_mapping(self):
        row = {
            "id": "sess",
            "account_id": ACC,
            "token_id": "tok",
            "ip_address": "10.0.0.1",
            "user_agent": "pytest",
            "remember_me": True,
            "login_at": NOW,
            "expires_at": NOW + timedelta(days=30),
            "logout_at": None,
            "is_active": True,
        }
        session = make_store(FakePool(FakeCursor([row]))).get_session_by_token_id("tok")

        assert session.token_id == "tok"
        assert session.remember_me is True
        assert session.is_live(NOW)


class TestMalformedIds:
    """Non-uuid ids behave as unknown rows instead of surfacing driver errors."""

    def test_lookups_and_updates_never_reach_the_database(self):
        store = make_store(DummyPool())

        assert store.get_account("bogus") is None
        assert store.clear_lock("bogus", now=NOW) is None
        assert store.reset_failed_attempts("bogus", now=NOW) is None
        assert store.get_device("bogus") is None
        assert store.list_devices("bogus") == []
        assert store.count_devices("bogus", active_only=True) == 0
        assert store.activate_device("bogus", now=NOW) is False
        assert store.delete_device("bogus") is False
        assert store.mark_backup_code_used("bogus", now=NOW) is False
        assert store.get_session("bogus") is None
        assert store.deactivate_session(ACC, now=NOW, session_id="bogus") == 0
        assert store.deactivate_account_sessions("bogus", now=NOW) == 0

    def test_writes_for_unknown_account_raise_constraint_violation(self):
        from totpgate.storage.models import Session

        store = make_store(DummyPool())

        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("bogus", now=NOW, ttl=timedelta(hours=8)))
        with pytest.raises(ConstraintViolation):
            store.replace_backup_codes("bogus", [])
        with pytest.raises(ConstraintViolation):
            store.create_device(Device.pending("bogus", "Phone", "ct", now=NOW), max_devices=2)

    def test_services_report_not_found(self, settings):
        from totpgate.service.backup_codes import BackupCodeManager
        from totpgate.service.devices import DeviceManager
        from totpgate.service.errors import NotFoundError, NotFoundOrForbidden
        from totpgate.service.totp import TOTPEngine
        from totpgate.service.vault import SecretVault

        store = make_store(DummyPool())
        vault = SecretVault(settings.effective_vault_key)
        devices = DeviceManager(
            store, vault, TOTPEngine(), BackupCodeManager(store, vault, settings), settings
        )

        with pytest.raises(NotFoundOrForbidden):
            devices.delete_device(ACC, "bogus")
        with pytest.raises(NotFoundError):
            devices.bind_device("bogus", "Phone")
        assert devices.verify_code("bogus", "123456") is False
