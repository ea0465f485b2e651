"""Tests for password strength, expiry, reuse and rotation rules."""

from datetime import datetime, timedelta, timezone

import pytest

from authgate.config import Settings
from authgate.service.errors import PasswordReusedError, WeakPasswordError
from authgate.service.password_policy import (
    DEFAULT_POLICY,
    PASSWORD_HISTORY_SIZE,
    PASSWORD_MAX_AGE_DAYS,
    PASSWORD_MIN_LENGTH,
    policy_from_settings,
)
from authgate.storage.models import SecurityRecord

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(**kwargs) -> SecurityRecord:
    return SecurityRecord(id="r1", identity="user@example.com", **kwargs)


class PlainVerifier:
    """Verifier whose 'hashes' are 'hash:<password>' strings."""

    def __init__(self):
        self.calls = 0

    def verify(self, credential_hash, candidate):
        self.calls += 1
        return credential_hash == f"hash:{candidate}"


class TestDefaults:
    def test_constants(self):
        assert PASSWORD_MIN_LENGTH == 13
        assert PASSWORD_MAX_AGE_DAYS == 184
        assert PASSWORD_HISTORY_SIZE == 2

    def test_policy_from_settings(self):
        settings = Settings(
            session_secret="x" * 40, password_min_length=16, password_max_age_days=90
        )
        policy = policy_from_settings(settings)
        assert policy.min_length == 16
        assert policy.max_age == timedelta(days=90)
        assert policy.history_size == 2


class TestValidateStrength:
    @pytest.mark.parametrize(
        "password",
        [
            "Short-1!",  # too short
            "abcdefghijklm",  # letters only
            "abcdefghijkl1",  # no special character
            "abcdefghijkl!",  # no digit
            "1234567890123!",  # no letter
            "   Abc-123!   ",  # long only because of padding
            "",
        ],
    )
    def test_rejects_weak_passwords(self, password):
        with pytest.raises(WeakPasswordError) as exc_info:
            DEFAULT_POLICY.validate_strength(password)
        assert exc_info.value.error_code == "WEAK_PASSWORD"
        assert "13" in exc_info.value.message

    def test_rejects_non_string(self):
        with pytest.raises(WeakPasswordError):
            DEFAULT_POLICY.validate_strength(None)

    def test_accepts_and_trims(self):
        assert DEFAULT_POLICY.validate_strength("  Correct-Horse-42!  ") == "Correct-Horse-42!"

    def test_exact_minimum_length_passes(self):
        value = "Abcdefghij1!x"
        assert len(value) == 13
        assert DEFAULT_POLICY.validate_strength(value) == value


class TestIsExpired:
    def test_must_change_forces_expiry_regardless_of_age(self):
        record = _record(password_updated_at=NOW, must_change_password=True)
        assert DEFAULT_POLICY.is_expired(record, NOW) is True

    def test_missing_updated_at_is_expired(self):
        assert DEFAULT_POLICY.is_expired(_record(password_updated_at=None), NOW) is True

    def test_missing_record_is_expired(self):
        assert DEFAULT_POLICY.is_expired(None, NOW) is True

    def test_fresh_password_not_expired(self):
        record = _record(password_updated_at=NOW - timedelta(days=183, hours=23))
        assert DEFAULT_POLICY.is_expired(record, NOW) is False

    def test_expires_at_exactly_max_age(self):
        record = _record(password_updated_at=NOW - timedelta(days=184))
        assert DEFAULT_POLICY.is_expired(record, NOW) is True


class TestReuse:
    def test_matches_current_hash(self):
        verifier = PlainVerifier()
        assert DEFAULT_POLICY.is_reused("secret", "hash:secret", [], verifier)

    def test_matches_history_entry(self):
        verifier = PlainVerifier()
        history = ["hash:older", "hash:oldest"]
        assert DEFAULT_POLICY.is_reused("oldest", "hash:current", history, verifier)

    def test_new_password_not_reused(self):
        verifier = PlainVerifier()
        assert not DEFAULT_POLICY.is_reused("fresh", "hash:current", ["hash:old"], verifier)
        assert verifier.calls == 2

    def test_compares_through_verifier_only(self):
        # The candidate equals the stored string, but the verifier says no
        verifier = PlainVerifier()
        assert not DEFAULT_POLICY.is_reused("hash:x", "hash:x", None, verifier)

    def test_broken_history_entry_is_skipped(self):
        class Exploding:
            def verify(self, credential_hash, candidate):
                if credential_hash == "corrupt":
                    raise ValueError("bad hash")
                return credential_hash == f"hash:{candidate}"

        assert DEFAULT_POLICY.is_reused("pw", None, ["corrupt", "hash:pw"], Exploding())

    def test_assert_not_reused_raises(self):
        with pytest.raises(PasswordReusedError) as exc_info:
            DEFAULT_POLICY.assert_not_reused("pw", "hash:pw", [], PlainVerifier())
        assert exc_info.value.error_code == "PASSWORD_REUSED"


class TestRotate:
    def test_prepends_current_hash(self):
        assert DEFAULT_POLICY.rotate("h2", ["h1"]) == ["h2", "h1"]

    def test_never_exceeds_two_entries(self):
        history = []
        current = "h0"
        for index in range(1, 6):
            history = DEFAULT_POLICY.rotate(current, history)
            assert len(history) <= 2
            assert history[0] == current
            current = f"h{index}"
        assert history == ["h4", "h3"]

    def test_missing_current_hash(self):
        assert DEFAULT_POLICY.rotate(None, ["h1", "h0", "stale"]) == ["h1", "h0"]
