import pytest
from pydantic import ValidationError

from authgate.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings(session_secret="s" * 32)
    assert settings.recaptcha_enabled is False
    assert settings.recaptcha_score_threshold == 0.5
    assert settings.password_min_length == 13
    assert settings.password_max_age_days == 184
    assert settings.lockout_max_attempts == 5
    assert settings.lockout_duration_minutes == 15
    assert settings.password_reset_token_ttl_minutes == 30
    assert settings.smtp_port == 587


def test_short_session_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(session_secret="too-short")


def test_missing_session_secret_is_generated():
    settings = Settings()
    assert len(settings.session_secret) >= 32
    assert Settings().session_secret != settings.session_secret


def test_audit_key_falls_back_to_session_secret():
    settings = Settings(session_secret="s" * 32)
    assert settings.effective_audit_key == "s" * 32
    assert Settings(session_secret="s" * 32, audit_hash_key="k").effective_audit_key == "k"


@pytest.mark.parametrize("value", [-0.1, 1.5])
def test_threshold_must_be_a_probability(value):
    with pytest.raises(ValidationError):
        Settings(session_secret="s" * 32, recaptcha_score_threshold=value)


def test_positive_limits():
    with pytest.raises(ValidationError):
        Settings(session_secret="s" * 32, lockout_max_attempts=0)


def test_from_env(monkeypatch):
    monkeypatch.setenv("RECAPTCHA_ENABLED", "yes")
    monkeypatch.setenv("RECAPTCHA_SCORE_THRESHOLD", "0.7")
    monkeypatch.setenv("PASSWORD_RESET_LINK_BASE_URL", "https://forum.example.com/")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
    monkeypatch.setenv("SMTP_USE_TLS", "false")
    settings = Settings.from_env()
    assert settings.recaptcha_enabled is True
    assert settings.recaptcha_score_threshold == 0.7
    assert settings.password_reset_base_url == "https://forum.example.com"
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.smtp_use_tls is False


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "7")
    reset_settings_cache()
    assert get_settings().lockout_max_attempts == 7
    reset_settings_cache()
