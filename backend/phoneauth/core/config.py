import logging
import os
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_PLACEHOLDER_SECRETS = {"your-secret-key-change-in-production", "changeme", "secret"}


class ConfigError(RuntimeError):
    pass


def parse_duration(raw: str) -> int:
    """Parse `30m`, `1h`, `7d` style durations into whole seconds."""
    match = DURATION_RE.match((raw or "").strip())
    if not match:
        raise ConfigError(f"Invalid duration {raw!r}. Use format like: 1h, 30m, 7d")
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {raw!r}")
    return seconds


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    jwt_access_secret: str
    jwt_refresh_secret: str
    app_env: str = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./phoneauth.db"
    redis_url: str = "redis://localhost:6379/0"
    kv_backend: str = "redis"

    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 7 * 86400
    token_issuer: str = "payroll-backend"
    token_audience: str = "payroll-app"

    otp_expiry_seconds: int = 300
    otp_resend_after_seconds: int = 60
    otp_phone_limit: int = 3
    otp_phone_window_seconds: int = 600
    otp_ip_limit: int = 10
    otp_ip_window_seconds: int = 3600

    max_failed_login_attempts: int = 5
    account_lock_minutes: int = 30

    sms_provider: str = "log"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    @property
    def is_production(self) -> bool:
        return self.app_env in {"production", "staging"}


def _validate_secret(name: str, secret: str, app_env: str) -> None:
    if app_env not in {"production", "staging"}:
        return
    if secret in _PLACEHOLDER_SECRETS:
        raise ConfigError(f"{name} must be changed from its default value in {app_env}")
    if len(secret) < 32:
        raise ConfigError(f"{name} must be at least 32 characters in {app_env}")


def load_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "development").strip().lower()

    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise ConfigError("JWT_SECRET is not set")
    access_secret = os.getenv("JWT_ACCESS_SECRET") or secret
    refresh_secret = os.getenv("JWT_REFRESH_SECRET") or secret
    for name, value in (("JWT_ACCESS_SECRET", access_secret), ("JWT_REFRESH_SECRET", refresh_secret)):
        _validate_secret(name, value, app_env)
    if access_secret == refresh_secret:
        logger.warning("Using same secret for access and refresh tokens; consider separate secrets")

    kv_backend = os.getenv("KV_BACKEND", "redis").strip().lower()
    if kv_backend not in {"redis", "memory"}:
        raise ConfigError(f"KV_BACKEND must be 'redis' or 'memory', got {kv_backend!r}")

    sms_provider = os.getenv("SMS_PROVIDER", "log").strip().lower()
    if sms_provider not in {"log", "twilio"}:
        raise ConfigError(f"SMS_PROVIDER must be 'log' or 'twilio', got {sms_provider!r}")
    if sms_provider == "twilio":
        missing = [
            name
            for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER")
            if not os.getenv(name)
        ]
        if missing:
            raise ConfigError(f"Twilio SMS provider requires {', '.join(missing)}")

    return Settings(
        jwt_access_secret=access_secret,
        jwt_refresh_secret=refresh_secret,
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./phoneauth.db"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        kv_backend=kv_backend,
        access_token_ttl_seconds=parse_duration(os.getenv("JWT_ACCESS_TOKEN_EXPIRY", "1h")),
        refresh_token_ttl_seconds=parse_duration(os.getenv("JWT_REFRESH_TOKEN_EXPIRY", "7d")),
        token_issuer=os.getenv("JWT_ISSUER", "payroll-backend"),
        token_audience=os.getenv("JWT_AUDIENCE", "payroll-app"),
        otp_expiry_seconds=_env_int("OTP_EXPIRY_SECONDS", 300),
        otp_resend_after_seconds=_env_int("OTP_RESEND_AFTER_SECONDS", 60),
        otp_phone_limit=_env_int("OTP_PHONE_LIMIT", 3),
        otp_phone_window_seconds=_env_int("OTP_PHONE_WINDOW_SECONDS", 600),
        otp_ip_limit=_env_int("OTP_IP_LIMIT", 10),
        otp_ip_window_seconds=_env_int("OTP_IP_WINDOW_SECONDS", 3600),
        max_failed_login_attempts=_env_int("MAX_FAILED_LOGIN_ATTEMPTS", 5),
        account_lock_minutes=_env_int("ACCOUNT_LOCK_MINUTES", 30),
        sms_provider=sms_provider,
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER"),
    )
