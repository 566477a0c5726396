from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from totpgate.clock import Clock, SystemClock
from totpgate.config import Settings, get_settings, reset_settings_cache
from totpgate.logging import get_logger
from totpgate.service.auth import AuthService
from totpgate.service.backup_codes import BackupCodeManager
from totpgate.service.devices import DeviceManager
from totpgate.service.lockout import AccountLockout
from totpgate.service.passwords import Argon2PasswordHasher
from totpgate.service.sessions import SessionManager
from totpgate.service.totp import TOTPEngine
from totpgate.service.vault import SecretVault
from totpgate.storage.memory import MemoryStore
from totpgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store and every authentication service for one process."""

    def __init__(self, settings: Settings | None = None, clock: Clock | None = None) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type=store_type,
                database_url=None if self.settings.use_memory_store else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.vault = SecretVault(self.settings.effective_vault_key)
        self.totp = TOTPEngine(self.clock)
        self.hasher = Argon2PasswordHasher()
        self.lockout = AccountLockout(self.store, self.settings, self.clock)
        self.backup_codes = BackupCodeManager(self.store, self.vault, self.settings, self.clock)
        self.devices = DeviceManager(
            self.store, self.vault, self.totp, self.backup_codes, self.settings, self.clock
        )
        self.sessions = SessionManager(self.store, self.settings, self.clock)
        self.auth = AuthService(
            self.store,
            self.settings,
            lockout=self.lockout,
            devices=self.devices,
            backup_codes=self.backup_codes,
            sessions=self.sessions,
            hasher=self.hasher,
            clock=self.clock,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
