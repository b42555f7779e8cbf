import logging

import pytest

from phoneauth.core.config import ConfigError, load_settings, parse_duration
from phoneauth.core.utils import is_e164, mask_phone_number

_ENV_NAMES = (
    "APP_ENV",
    "JWT_SECRET",
    "JWT_ACCESS_SECRET",
    "JWT_REFRESH_SECRET",
    "JWT_ACCESS_TOKEN_EXPIRY",
    "JWT_REFRESH_TOKEN_EXPIRY",
    "KV_BACKEND",
    "SMS_PROVIDER",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "OTP_PHONE_LIMIT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [("45s", 45), ("30m", 1800), ("1h", 3600), ("7d", 604800)],
)
def test_parse_duration(raw, seconds):
    assert parse_duration(raw) == seconds


@pytest.mark.parametrize("raw", ["", "1", "h", "1w", "-1h", "1.5h", "0s", "1 h"])
def test_parse_duration_rejects_bad_values(raw):
    with pytest.raises(ConfigError):
        parse_duration(raw)


def test_jwt_secret_is_required():
    with pytest.raises(ConfigError, match="JWT_SECRET"):
        load_settings()


def test_defaults(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "dev-secret")
    settings = load_settings()

    assert settings.jwt_access_secret == "dev-secret"
    assert settings.jwt_refresh_secret == "dev-secret"
    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 604800
    assert settings.token_issuer == "payroll-backend"
    assert settings.token_audience == "payroll-app"
    assert settings.otp_phone_limit == 3
    assert settings.otp_ip_limit == 10
    assert settings.max_failed_login_attempts == 5
    assert settings.account_lock_minutes == 30
    assert settings.is_production is False


def test_shared_secret_logs_warning(monkeypatch, caplog):
    monkeypatch.setenv("JWT_SECRET", "dev-secret")
    with caplog.at_level(logging.WARNING, logger="phoneauth.core.config"):
        load_settings()
    assert "same secret" in caplog.text


def test_production_rejects_short_secret(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("JWT_SECRET", "short")
    with pytest.raises(ConfigError, match="32 characters"):
        load_settings()


def test_production_rejects_placeholder_secret(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("JWT_SECRET", "your-secret-key-change-in-production")
    with pytest.raises(ConfigError):
        load_settings()


def test_custom_durations(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "dev-secret")
    monkeypatch.setenv("JWT_ACCESS_TOKEN_EXPIRY", "15m")
    monkeypatch.setenv("JWT_REFRESH_TOKEN_EXPIRY", "30d")
    settings = load_settings()
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 30 * 86400


def test_invalid_integer_setting(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "dev-secret")
    monkeypatch.setenv("OTP_PHONE_LIMIT", "many")
    with pytest.raises(ConfigError, match="OTP_PHONE_LIMIT"):
        load_settings()


def test_twilio_requires_credentials(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "dev-secret")
    monkeypatch.setenv("SMS_PROVIDER", "twilio")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    with pytest.raises(ConfigError, match="TWILIO_AUTH_TOKEN"):
        load_settings()


def test_unknown_kv_backend(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "dev-secret")
    monkeypatch.setenv("KV_BACKEND", "memcached")
    with pytest.raises(ConfigError):
        load_settings()


@pytest.mark.parametrize(
    ("phone", "masked"),
    [("+919876543210", "+XXXXXXXX3210"), ("+15551234567", "+XXXXXXX4567"), ("1234", "1234")],
)
def test_mask_phone_number(phone, masked):
    assert mask_phone_number(phone) == masked


@pytest.mark.parametrize(
    ("phone", "valid"),
    [("+919876543210", True), ("+15551234567", True), ("919876543210", False), ("+0123", False), ("", False)],
)
def test_is_e164(phone, valid):
    assert is_e164(phone) is valid
