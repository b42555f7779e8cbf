import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from phoneauth.core.events import EVENT_ACCOUNT_LOCKED, EVENT_SEVERITY_DANGER, emit_security_event
from phoneauth.core.observability import log_auth_event
from phoneauth.core.utils import utc_now_naive
from phoneauth.db.models.user import User
from phoneauth.services.users import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    locked_until: datetime | None = None
    retry_after_seconds: int = 0


@dataclass(frozen=True)
class FailureResult:
    locked: bool
    failed_attempts: int
    attempts_remaining: int
    locked_until: datetime | None = None


class AccountLockPolicy:
    """Per-user Unlocked/Locked state machine driven by failed OTP verifications.

    A lock ends when `locked_until` passes; nothing clears it explicitly. The failure
    counter is capped at `max_attempts`.
    """

    def __init__(
        self,
        users: UserRepository,
        *,
        max_attempts: int = 5,
        lock_minutes: int = 30,
        now: Callable[[], datetime] = utc_now_naive,
    ):
        self.users = users
        self.max_attempts = max_attempts
        self.lock_minutes = lock_minutes
        self.lock_duration = timedelta(minutes=lock_minutes)
        self._now = now

    def _reload(self, user: User) -> User:
        return self.users.get_user(user.id) or user

    def current_lock(self, user: User) -> LockStatus:
        return self._lock_status(self._reload(user))

    def _lock_status(self, user: User) -> LockStatus:
        now = self._now()
        if user.is_locked and user.locked_until is not None and user.locked_until > now:
            return LockStatus(
                locked=True,
                locked_until=user.locked_until,
                retry_after_seconds=math.ceil((user.locked_until - now).total_seconds()),
            )
        return LockStatus(locked=False)

    def _has_expired_lock(self, user: User) -> bool:
        return bool(user.is_locked) or (user.failed_login_attempts or 0) >= self.max_attempts

    def _locked_result(self, user: User, status: LockStatus) -> FailureResult:
        return FailureResult(
            locked=True,
            failed_attempts=min(user.failed_login_attempts or 0, self.max_attempts),
            attempts_remaining=0,
            locked_until=status.locked_until,
        )

    def record_failure(self, user: User) -> FailureResult:
        user = self._reload(user)
        status = self._lock_status(user)
        if status.locked:
            return self._locked_result(user, status)

        if self._has_expired_lock(user):
            # previous lock window has passed; the user gets a fresh set of attempts
            self.users.clear_lock(user.id, expired_only=True)
            self.users.set_failed_attempts(user.id, 0)

        attempts = self.users.increment_failed_attempts(user.id)
        if attempts < self.max_attempts:
            log_auth_event(logger, event="account.failed_attempt", user_id=user.id, attempts=attempts)
            return FailureResult(
                locked=False,
                failed_attempts=attempts,
                attempts_remaining=self.max_attempts - attempts,
            )

        if attempts > self.max_attempts:
            self.users.set_failed_attempts(user.id, self.max_attempts)
            attempts = self.max_attempts

        locked_until = self._now() + self.lock_duration
        if not self.users.lock(user.id, locked_until):
            # another request locked the account first
            user = self._reload(user)
            return self._locked_result(user, self._lock_status(user))

        emit_security_event(
            self.users.db,
            event_type=EVENT_ACCOUNT_LOCKED,
            severity=EVENT_SEVERITY_DANGER,
            target_user_id=user.id,
            meta_json={"failed_attempts": attempts, "locked_until": locked_until.isoformat()},
            created_at=self._now(),
        )
        self.users.db.commit()
        log_auth_event(
            logger,
            event="account.locked",
            level=logging.WARNING,
            user_id=user.id,
            locked_until=locked_until.isoformat(),
        )
        return FailureResult(locked=True, failed_attempts=attempts, attempts_remaining=0, locked_until=locked_until)

    def record_success(self, user: User) -> None:
        user = self._reload(user)
        if user.is_locked:
            self.users.clear_lock(user.id)
        self.users.set_failed_attempts(user.id, 0)
