import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from phoneauth.core.config import Settings
from phoneauth.core.kv_store import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from phoneauth.core.metrics import AuthMetrics
from phoneauth.core.security import TokenIssuer
from phoneauth.core.sms import LoggingSmsSender, SmsSender, TwilioSmsSender
from phoneauth.core.utils import utc_now_naive
from phoneauth.db.session import create_db_engine, create_session_factory
from phoneauth.services.account_lock import AccountLockPolicy
from phoneauth.services.authentication import AuthenticationService
from phoneauth.services.otp import OtpChallengeManager
from phoneauth.services.rate_limit import ip_rate_limiter, phone_rate_limiter
from phoneauth.services.sessions import SessionStore
from phoneauth.services.users import UserRepository

logger = logging.getLogger(__name__)


@dataclass
class AuthContainer:
    """Process-wide collaborators. Database sessions are opened per request."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    kv_store: KeyValueStore
    sms_sender: SmsSender
    tokens: TokenIssuer
    metrics: AuthMetrics = field(default_factory=AuthMetrics)
    now: Callable[[], datetime] = utc_now_naive
    otp_clock: Callable[[], float] | None = None

    def auth_service(self, db: Session) -> AuthenticationService:
        settings = self.settings
        users = UserRepository(db, now=self.now)
        otp_kwargs = {"clock": self.otp_clock} if self.otp_clock is not None else {}
        return AuthenticationService(
            users=users,
            sessions=SessionStore(db, now=self.now),
            lock_policy=AccountLockPolicy(
                users,
                max_attempts=settings.max_failed_login_attempts,
                lock_minutes=settings.account_lock_minutes,
                now=self.now,
            ),
            otp=OtpChallengeManager(
                self.kv_store,
                secret=settings.jwt_access_secret,
                expiry_seconds=settings.otp_expiry_seconds,
                **otp_kwargs,
            ),
            phone_limiter=phone_rate_limiter(
                self.kv_store,
                limit=settings.otp_phone_limit,
                window_seconds=settings.otp_phone_window_seconds,
            ),
            ip_limiter=ip_rate_limiter(
                self.kv_store,
                limit=settings.otp_ip_limit,
                window_seconds=settings.otp_ip_window_seconds,
            ),
            tokens=self.tokens,
            sms=self.sms_sender,
            metrics=self.metrics,
            now=self.now,
            otp_resend_after_seconds=settings.otp_resend_after_seconds,
        )

    def close(self) -> None:
        self.kv_store.close()
        self.engine.dispose()


def build_kv_store(settings: Settings) -> KeyValueStore:
    if settings.kv_backend == "memory":
        if settings.is_production:
            logger.warning("Memory key-value store in %s; rate limits are per process", settings.app_env)
        return MemoryKeyValueStore()
    return RedisKeyValueStore.from_url(settings.redis_url)


def build_sms_sender(settings: Settings) -> SmsSender:
    expiry_minutes = max(1, settings.otp_expiry_seconds // 60)
    if settings.sms_provider == "twilio":
        return TwilioSmsSender(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_from_number,
            expiry_minutes=expiry_minutes,
        )
    return LoggingSmsSender()


def build_container(settings: Settings) -> AuthContainer:
    engine = create_db_engine(settings.database_url)
    container = AuthContainer(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        kv_store=build_kv_store(settings),
        sms_sender=build_sms_sender(settings),
        tokens=TokenIssuer(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
        ),
    )
    logger.info(
        "auth_container_ready env=%s kv_backend=%s sms_provider=%s",
        settings.app_env,
        settings.kv_backend,
        settings.sms_provider,
    )
    return container
