"""Unit tests for TOTP generation and verification."""

import base64
from datetime import datetime, timedelta, timezone

import pytest

from totpgate.clock import FrozenClock
from totpgate.service.errors import InvalidSecretError
from totpgate.service.totp import TOTPEngine

# RFC 6238 appendix B seed ("12345678901234567890") in base32
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()
SCENARIO_SECRET = "JBSWY3DPEHPK3PXP"


def at(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(at(1_700_000_010))


@pytest.fixture
def engine(clock):
    return TOTPEngine(clock)


class TestGenerate:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1111111111, "050471"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc6238_sha1_vectors(self, engine, timestamp, expected):
        """Six-digit truncation of the RFC 6238 SHA1 test vectors."""
        assert engine.generate(RFC_SECRET, at(timestamp)) == expected

    def test_generate_is_deterministic(self, engine):
        moment = at(1_700_000_000)
        assert engine.generate(SCENARIO_SECRET, moment) == engine.generate(SCENARIO_SECRET, moment)

    def test_codes_are_zero_padded_digits(self, engine):
        for offset in range(0, 3000, 30):
            code = engine.generate(SCENARIO_SECRET, at(1_600_000_000 + offset))
            assert len(code) == 6 and code.isdigit()

    def test_secret_accepts_lowercase_and_missing_padding(self, engine):
        moment = at(1_700_000_000)
        assert engine.generate("jbswy3dpehpk3pxp", moment) == engine.generate(SCENARIO_SECRET, moment)

    def test_generate_secret_is_20_random_bytes(self):
        secret = TOTPEngine.generate_secret()
        assert len(base64.b32decode(secret)) == 20
        assert secret != TOTPEngine.generate_secret()


class TestVerify:
    def test_current_code_verifies_with_zero_tolerance(self, engine, clock):
        code = engine.generate(SCENARIO_SECRET, clock.now())
        match = engine.verify(SCENARIO_SECRET, code, 0)
        assert match.valid
        assert match.matched_step == TOTPEngine.time_step(clock.now())

    def test_replay_31_seconds_later(self, engine, clock):
        """A code from the previous step needs at least one minute of tolerance."""
        code = engine.generate(SCENARIO_SECRET, clock.now())
        clock.advance(seconds=31)

        assert not engine.verify(SCENARIO_SECRET, code, 0).valid
        assert engine.verify(SCENARIO_SECRET, code, 1).valid

    def test_window_is_two_steps_per_minute(self, engine, clock):
        now = clock.now()
        inside = engine.generate(SCENARIO_SECRET, now - timedelta(seconds=60))
        outside = engine.generate(SCENARIO_SECRET, now - timedelta(seconds=90))

        assert engine.verify(SCENARIO_SECRET, inside, 1).valid
        assert not engine.verify(SCENARIO_SECRET, outside, 1).valid

    def test_future_codes_within_tolerance_accepted(self, engine, clock):
        ahead = engine.generate(SCENARIO_SECRET, clock.now() + timedelta(minutes=4))
        assert engine.verify(SCENARIO_SECRET, ahead, 5).valid

    def test_first_match_scans_from_oldest_step(self, engine, clock):
        earlier = clock.now() - timedelta(seconds=30)
        code = engine.generate(SCENARIO_SECRET, earlier)
        match = engine.verify(SCENARIO_SECRET, code, 5)
        assert match.matched_step == TOTPEngine.time_step(earlier)

    def test_explicit_time_overrides_clock(self, engine):
        moment = at(1_234_567_890)
        assert engine.verify(RFC_SECRET, "005924", 0, at=moment).valid

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "١٢٣٤٥٦"])
    def test_malformed_codes_are_invalid(self, engine, code):
        match = engine.verify(SCENARIO_SECRET, code, 5)
        assert not match.valid
        assert match.matched_step is None

    def test_surrounding_whitespace_ignored(self, engine, clock):
        code = engine.generate(SCENARIO_SECRET, clock.now())
        assert engine.verify(SCENARIO_SECRET, f" {code} ", 0).valid

    @pytest.mark.parametrize("secret", ["", "not base32!", "JBSWY3DPEHPK3PX1"])
    def test_invalid_secret_raises(self, engine, secret):
        with pytest.raises(InvalidSecretError):
            engine.verify(secret, "123456", 1)
        with pytest.raises(InvalidSecretError):
            engine.generate(secret)
