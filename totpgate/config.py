from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from totpgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Authentication policy and infrastructure settings."""

    # lockout policy
    max_failed_attempts: int = env_field(
        5,
        "MAX_FAILED_ATTEMPTS",
        description="Consecutive wrong passwords before the account locks",
    )
    lockout_duration_minutes: int = env_field(
        15, "LOCKOUT_DURATION_MINUTES", description="How long a lock lasts"
    )
    # devices and codes
    max_devices_per_account: int = env_field(
        2,
        "MAX_DEVICES_PER_ACCOUNT",
        description="Pending plus active TOTP devices allowed per account",
    )
    totp_tolerance_minutes: int = env_field(
        5,
        "TOTP_TOLERANCE_MINUTES",
        description="Clock drift accepted either side of now (two 30s steps per minute)",
    )
    otp_issuer: str = env_field("totpgate", "OTP_ISSUER")
    backup_code_min: int = env_field(1, "BACKUP_CODE_MIN")
    backup_code_max: int = env_field(20, "BACKUP_CODE_MAX")
    backup_code_default_count: int = env_field(10, "BACKUP_CODE_DEFAULT_COUNT")
    # sessions
    session_duration_hours: int = env_field(8, "SESSION_DURATION_HOURS")
    session_duration_days_remember_me: int = env_field(
        30, "SESSION_DURATION_DAYS_REMEMBER_ME"
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("totpgate", "JWT_ISSUER")
    jwt_audience: str = env_field("totpgate-clients", "JWT_AUDIENCE")
    vault_key: str | None = env_field(
        None,
        "VAULT_KEY",
        description="Key material for encrypting TOTP secrets and backup codes; defaults to JWT_SECRET",
    )
    # infrastructure
    database_url: str = env_field(
        "postgresql://localhost:5432/totpgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/totpgate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "max_failed_attempts",
        "lockout_duration_minutes",
        "max_devices_per_account",
        "session_duration_hours",
        "session_duration_days_remember_me",
        "backup_code_min",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_tolerance_minutes")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_backup_code_bounds(self) -> "Settings":
        if self.backup_code_min > self.backup_code_max:
            raise ValueError("backup_code_min must not exceed backup_code_max")
        if not self.backup_code_min <= self.backup_code_default_count <= self.backup_code_max:
            raise ValueError("backup_code_default_count must lie within the configured bounds")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/totpgate"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user (e.g. in a container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def effective_vault_key(self) -> str:
        return self.vault_key or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
