import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Configure the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="totpgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from totpgate.clock import FrozenClock  # noqa: E402
from totpgate.config import Settings  # noqa: E402
from totpgate.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402

# Mid-step instant (12:00:10 UTC) so a few seconds of drift stays in one TOTP step
START = datetime(2024, 1, 15, 12, 0, 10, tzinfo=timezone.utc)
PASSWORD = "CorrectHorse-Battery9"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def make_settings():
    """Factory for settings with test secrets and per-test overrides."""

    def _make(**overrides) -> Settings:
        values = {
            "jwt_secret": "Test-Secret-Key_for-Automation-Only-987654321!",
            "vault_key": "vault-key-for-tests-only",
            "use_memory_store": True,
            "test_mode": True,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_runtime(make_settings, clock):
    """Build an isolated in-memory Runtime sharing the frozen clock."""

    def _make(**overrides) -> Runtime:
        return Runtime(make_settings(**overrides), clock)

    return _make


@pytest.fixture
def rt(make_runtime):
    return make_runtime()


@pytest.fixture
def account(rt):
    return rt.auth.register("a@x.com", PASSWORD)


def activate_device(rt, account_id: str, label: str = "Phone"):
    """Bind a device and confirm it with a code from its own secret."""
    enrollment = rt.devices.bind_device(account_id, label)
    assert rt.devices.verify_setup(account_id, label, rt.totp.generate(enrollment.secret))
    return enrollment
