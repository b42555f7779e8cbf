from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from phoneauth.core.config import Settings
from phoneauth.core.container import AuthContainer
from phoneauth.core.kv_store import MemoryKeyValueStore
from phoneauth.core.security import TokenIssuer
from phoneauth.core.utils import utc_now_naive
from phoneauth.db import models  # noqa: F401
from phoneauth.db.base import Base
from phoneauth.db.models.security_event import SecurityEvent
from phoneauth.db.session import create_db_engine, create_session_factory
from phoneauth.services.authentication import AuthenticationService

ACCESS_SECRET = "test-access-secret-0123456789abcdef"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef"
_EPOCH = datetime(1970, 1, 1)


class FakeClock:
    """Naive-UTC wall clock shared by the database code, tokens and the key-value store.

    Starts at the real current second because JWT expiry is checked against real time.
    """

    def __init__(self, start: datetime | None = None):
        self.current = start or utc_now_naive().replace(microsecond=0)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return (self.current - _EPOCH).total_seconds()

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class CapturingSmsSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, phone_number: str, code: str) -> bool:
        if self.fail:
            return False
        self.sent.append((phone_number, code))
        return True

    def last_code(self, phone_number: str) -> str:
        for phone, code in reversed(self.sent):
            if phone == phone_number:
                return code
        raise AssertionError(f"no code sent to {phone_number}")


def make_token_issuer(clock) -> TokenIssuer:
    return TokenIssuer(access_secret=ACCESS_SECRET, refresh_secret=REFRESH_SECRET, clock=clock)


def issuer_at(moment: datetime) -> TokenIssuer:
    return make_token_issuer(lambda: moment)


def real_past(**delta) -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0) - timedelta(**delta)


def security_events(db: Session, user_id: str, event_type: str | None = None) -> list[SecurityEvent]:
    stmt = select(SecurityEvent).where(SecurityEvent.target_user_id == user_id)
    if event_type:
        stmt = stmt.where(SecurityEvent.event_type == event_type)
    return list(db.scalars(stmt.order_by(SecurityEvent.id.asc())))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        app_env="test",
        database_url="sqlite://",
        kv_backend="memory",
    )


@pytest.fixture()
def kv_store(clock: FakeClock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock.time)


@pytest.fixture()
def sms() -> CapturingSmsSender:
    return CapturingSmsSender()


@pytest.fixture()
def container(settings, clock, kv_store, sms) -> Generator[AuthContainer, None, None]:
    engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    container = AuthContainer(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        kv_store=kv_store,
        sms_sender=sms,
        tokens=make_token_issuer(clock.now),
        now=clock.now,
        otp_clock=clock.time,
    )
    try:
        yield container
    finally:
        Base.metadata.drop_all(bind=engine)
        container.close()


@pytest.fixture()
def db_session(container: AuthContainer) -> Generator[Session, None, None]:
    session = container.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def service(container: AuthContainer, db_session: Session) -> AuthenticationService:
    return container.auth_service(db_session)


def login(service: AuthenticationService, sms: CapturingSmsSender, phone: str, device=None, client_ip="10.0.0.1"):
    sent = service.send_challenge(phone, client_ip)
    assert sent.ok, sent.failure
    return service.verify_and_login(phone, sms.last_code(phone), device, client_ip)
