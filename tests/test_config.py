"""Unit tests for settings defaults, environment loading and validation."""

import pydantic
import pytest

from totpgate.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run from an empty directory so no stray .env file is read."""
    monkeypatch.chdir(tmp_path)
    reset_settings_cache()
    yield tmp_path
    reset_settings_cache()


def test_policy_defaults(settings):
    assert settings.max_failed_attempts == 5
    assert settings.lockout_duration_minutes == 15
    assert settings.max_devices_per_account == 2
    assert settings.totp_tolerance_minutes == 5
    assert settings.session_duration_hours == 8
    assert settings.session_duration_days_remember_me == 30
    assert (settings.backup_code_min, settings.backup_code_default_count, settings.backup_code_max) == (1, 10, 20)


def test_from_env_reads_declared_names(isolated_env, monkeypatch):
    monkeypatch.setenv("MAX_FAILED_ATTEMPTS", "3")
    monkeypatch.setenv("TOTP_TOLERANCE_MINUTES", "0")
    monkeypatch.setenv("OTP_ISSUER", "Example Corp")

    settings = Settings.from_env()

    assert settings.max_failed_attempts == 3
    assert settings.totp_tolerance_minutes == 0
    assert settings.otp_issuer == "Example Corp"


def test_dotenv_file_used_when_environment_silent(isolated_env, monkeypatch):
    monkeypatch.delenv("LOCKOUT_DURATION_MINUTES", raising=False)
    (isolated_env / ".env").write_text("LOCKOUT_DURATION_MINUTES=45\n")

    assert Settings.from_env().lockout_duration_minutes == 45


def test_environment_wins_over_dotenv(isolated_env, monkeypatch):
    (isolated_env / ".env").write_text("SESSION_DURATION_HOURS=2\n")
    monkeypatch.setenv("SESSION_DURATION_HOURS", "4")

    assert Settings.from_env().session_duration_hours == 4


def test_get_settings_is_cached_until_reset(isolated_env, monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("MAX_DEVICES_PER_ACCOUNT", "3")
    reset_settings_cache()
    assert get_settings().max_devices_per_account == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_failed_attempts": 0},
        {"lockout_duration_minutes": -1},
        {"max_devices_per_account": 0},
        {"totp_tolerance_minutes": -1},
        {"backup_code_min": 5, "backup_code_max": 4, "backup_code_default_count": 4},
        {"backup_code_default_count": 25},
    ],
)
def test_invalid_policy_rejected(make_settings, overrides):
    with pytest.raises(pydantic.ValidationError):
        make_settings(**overrides)


def test_vault_key_defaults_to_jwt_secret(make_settings):
    assert make_settings(vault_key=None).effective_vault_key == make_settings().jwt_secret
    assert make_settings(vault_key="explicit").effective_vault_key == "explicit"


class TestGeneratedJwtSecret:
    def test_generated_secret_is_persisted_and_reused(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings()

        assert len(first.jwt_secret) >= 32
        assert second.jwt_secret == first.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_short_persisted_secret_is_replaced(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        (tmp_path / ".jwt_secret").write_text("short")

        settings = Settings()

        assert settings.jwt_secret != "short"
        assert (tmp_path / ".jwt_secret").read_text() == settings.jwt_secret

    def test_explicit_secret_skips_filesystem(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "unused"))
        assert Settings(jwt_secret="explicit-secret").jwt_secret == "explicit-secret"
        assert not (tmp_path / "unused").exists()
