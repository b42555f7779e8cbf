import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from phoneauth.core.errors import AuthOutcome, ErrorKind
from phoneauth.core.metrics import AuthMetrics
from phoneauth.core.observability import log_auth_event
from phoneauth.core.security import (
    TokenClaims,
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuer,
    TokenMalformedError,
    TokenPair,
    hash_token,
)
from phoneauth.core.sms import SmsSender
from phoneauth.core.utils import is_e164, mask_phone_number, utc_now_naive
from phoneauth.db.models.user import User
from phoneauth.services.account_lock import AccountLockPolicy
from phoneauth.services.otp import OtpChallengeManager
from phoneauth.services.rate_limit import RateLimiter
from phoneauth.services.sessions import (
    REASON_ACCOUNT_LOCKED,
    REASON_NO_ORGANIZATION,
    REASON_TOKEN_EXPIRED,
    REASON_USER_DEACTIVATED,
    REASON_USER_LOGOUT,
    REASON_USER_LOGOUT_ALL,
    REASON_USER_NOT_FOUND,
    DeviceInfo,
    SessionStore,
)
from phoneauth.services.users import OrgContext, UserRepository

logger = logging.getLogger(__name__)

NEXT_STEP_COMPLETE_PROFILE = "complete_profile"
NEXT_STEP_DASHBOARD = "dashboard"


@dataclass(frozen=True)
class ChallengeSent:
    otp_sent: bool
    expires_in: int
    message: str
    retry_after: int

    def as_dict(self) -> dict:
        return {
            "otp_sent": self.otp_sent,
            "expires_in": self.expires_in,
            "message": self.message,
            "retry_after": self.retry_after,
        }


@dataclass(frozen=True)
class LoginResult:
    is_new_user: bool
    user_id: str
    phone_number: str
    organization_id: str
    role: str
    session_id: str
    tokens: TokenPair

    @property
    def next_step(self) -> str:
        return NEXT_STEP_COMPLETE_PROFILE if self.is_new_user else NEXT_STEP_DASHBOARD

    def as_dict(self) -> dict:
        return {
            "is_new_user": self.is_new_user,
            "user": {"id": self.user_id, "phone_number": self.phone_number, "role": self.role},
            "organization": {"id": self.organization_id, "is_default": self.is_new_user},
            "session_id": self.session_id,
            "tokens": self.tokens.as_dict(),
            "next_step": self.next_step,
        }


@dataclass(frozen=True)
class LogoutResult:
    message: str
    devices_logged_out: int

    def as_dict(self) -> dict:
        return {"message": self.message, "devices_logged_out": self.devices_logged_out}


class AuthenticationService:
    """Send-challenge, verify-and-login, refresh and logout flows.

    Every expected outcome comes back as an `AuthOutcome`; anything unexpected raised by a
    collaborator is logged here and reported as `INTERNAL`. Lock state and revocations are
    committed as they happen and stay in place even when a later step fails.
    """

    def __init__(
        self,
        *,
        users: UserRepository,
        sessions: SessionStore,
        lock_policy: AccountLockPolicy,
        otp: OtpChallengeManager,
        phone_limiter: RateLimiter,
        ip_limiter: RateLimiter,
        tokens: TokenIssuer,
        sms: SmsSender,
        metrics: AuthMetrics | None = None,
        now: Callable[[], datetime] = utc_now_naive,
        otp_resend_after_seconds: int = 60,
    ):
        self.users = users
        self.sessions = sessions
        self.lock_policy = lock_policy
        self.otp = otp
        self.phone_limiter = phone_limiter
        self.ip_limiter = ip_limiter
        self.tokens = tokens
        self.sms = sms
        self.metrics = metrics or AuthMetrics()
        self._now = now
        self.otp_resend_after_seconds = otp_resend_after_seconds

    def _run(self, flow: str, fn: Callable[..., AuthOutcome], *args, **kwargs) -> AuthOutcome:
        try:
            outcome = fn(*args, **kwargs)
        except Exception:
            logger.exception("auth_flow_failed flow=%s", flow)
            self.users.db.rollback()
            outcome = AuthOutcome.fail(ErrorKind.INTERNAL)
        result = "success" if outcome.ok else outcome.failure.kind.value.lower()
        self.metrics.increment(f"auth_{flow}_total", result=result)
        return outcome

    # -- send challenge ---------------------------------------------------------

    def send_challenge(self, phone_number: str, client_ip: str | None) -> AuthOutcome[ChallengeSent]:
        return self._run("send_challenge", self._send_challenge, phone_number, client_ip)

    def _send_challenge(self, phone_number: str, client_ip: str | None) -> AuthOutcome[ChallengeSent]:
        if not is_e164(phone_number):
            logger.error("send_challenge called with a non-normalized phone number")
            return AuthOutcome.fail(ErrorKind.INTERNAL, reason="invalid_phone_number")

        phone_decision = self.phone_limiter.check(phone_number)
        if not phone_decision.allowed:
            log_auth_event(logger, event="otp.rate_limited", scope="phone", phone=phone_number)
            return AuthOutcome.fail(
                ErrorKind.RATE_LIMITED,
                "Too many OTP requests. Please try after some time",
                scope="phone",
                retry_after=phone_decision.retry_after_seconds,
                max_attempts=phone_decision.limit,
            )

        ip_decision = self.ip_limiter.check(client_ip or "unknown")
        if not ip_decision.allowed:
            log_auth_event(logger, event="otp.rate_limited", scope="ip", ip=client_ip)
            return AuthOutcome.fail(
                ErrorKind.RATE_LIMITED,
                "Too many OTP requests from this IP. Please try later",
                scope="ip",
                retry_after=ip_decision.retry_after_seconds,
            )

        code = self.otp.issue(phone_number)
        try:
            delivered = self.sms.send(phone_number, code)
        except Exception:
            logger.exception("sms_send_failed destination=%s", mask_phone_number(phone_number))
            delivered = False
        if not delivered:
            return AuthOutcome.fail(ErrorKind.OTP_DELIVERY_FAILED)

        log_auth_event(logger, event="otp.sent", phone=phone_number)
        return AuthOutcome.success(
            ChallengeSent(
                otp_sent=True,
                expires_in=self.otp.expiry_seconds,
                message=f"OTP sent to {mask_phone_number(phone_number)}",
                retry_after=self.otp_resend_after_seconds,
            )
        )

    # -- verify and login -------------------------------------------------------

    def verify_and_login(
        self,
        phone_number: str,
        code: str,
        device: DeviceInfo | None = None,
        client_ip: str | None = None,
    ) -> AuthOutcome[LoginResult]:
        return self._run("verify", self._verify_and_login, phone_number, code, device, client_ip)

    def _verify_and_login(
        self,
        phone_number: str,
        code: str,
        device: DeviceInfo | None,
        client_ip: str | None,
    ) -> AuthOutcome[LoginResult]:
        if not is_e164(phone_number):
            logger.error("verify_and_login called with a non-normalized phone number")
            return AuthOutcome.fail(ErrorKind.INTERNAL, reason="invalid_phone_number")

        user = self.users.find_user_by_phone(phone_number)
        if user is not None:
            # checked before the code so a locked account never consumes its OTP
            lock = self.lock_policy.current_lock(user)
            if lock.locked:
                log_auth_event(logger, event="verify.locked", user_id=user.id)
                return AuthOutcome.fail(
                    ErrorKind.ACCOUNT_LOCKED,
                    locked_until=lock.locked_until.isoformat(),
                    retry_after=lock.retry_after_seconds,
                )

        if not self.otp.verify(phone_number, code):
            if user is None:
                return AuthOutcome.fail(ErrorKind.OTP_INVALID)
            failure = self.lock_policy.record_failure(user)
            if failure.locked:
                return AuthOutcome.fail(
                    ErrorKind.ACCOUNT_LOCKED,
                    f"Too many failed attempts. Account locked for {self.lock_policy.lock_minutes} minutes",
                    locked_until=failure.locked_until.isoformat() if failure.locked_until else None,
                    retry_after=int(self.lock_policy.lock_duration.total_seconds()),
                )
            return AuthOutcome.fail(ErrorKind.OTP_INVALID, attempts_remaining=failure.attempts_remaining)

        is_new_user = user is None
        if user is None:
            user, organization_id, role = self._bootstrap_user(phone_number)
            if organization_id is None:
                is_new_user = False
        else:
            self.lock_policy.record_success(user)
            organization_id, role = None, None

        if organization_id is None:
            if not user.is_active:
                return AuthOutcome.fail(ErrorKind.UNAUTHORIZED, reason=REASON_USER_DEACTIVATED)
            context = self.users.get_user_org_context(user.id)
            if context is None or not context.organization_id or not context.role:
                return AuthOutcome.fail(ErrorKind.UNAUTHORIZED, reason=REASON_NO_ORGANIZATION)
            organization_id, role = context.organization_id, context.role

        session_id = str(uuid.uuid4())
        pair = self.tokens.issue(
            TokenClaims(user_id=user.id, organization_id=organization_id, role=role, session_id=session_id)
        )
        try:
            self.sessions.create(
                user_id=user.id,
                refresh_token_hash=hash_token(pair.refresh_token),
                expires_at=self.tokens.refresh_expires_at(),
                device=device,
                session_id=session_id,
                ip_address=client_ip,
            )
        except Exception:
            logger.exception("session_create_failed user_id=%s", user.id)
            return AuthOutcome.fail(ErrorKind.INTERNAL)

        self.users.touch_login(user.id, client_ip)
        log_auth_event(
            logger,
            event="verify.success",
            user_id=user.id,
            session_id=session_id,
            new_user=is_new_user,
        )
        return AuthOutcome.success(
            LoginResult(
                is_new_user=is_new_user,
                user_id=user.id,
                phone_number=phone_number,
                organization_id=organization_id,
                role=role,
                session_id=session_id,
                tokens=pair,
            )
        )

    def _bootstrap_user(self, phone_number: str) -> tuple[User, str | None, str | None]:
        try:
            created = self.users.create_user_with_default_org(phone_number)
        except IntegrityError:
            # a concurrent login created the user first; continue as an existing user
            existing = self.users.find_user_by_phone(phone_number)
            if existing is None:
                raise
            return existing, None, None
        log_auth_event(logger, event="user.bootstrapped", user_id=created.user.id, phone=phone_number)
        return created.user, created.organization_id, created.role

    # -- refresh ----------------------------------------------------------------

    def refresh(self, refresh_token: str) -> AuthOutcome[TokenPair]:
        return self._run("refresh", self._refresh, refresh_token)

    def _standing_violation(self, context: OrgContext | None) -> str | None:
        if context is None:
            return REASON_USER_NOT_FOUND
        if not context.is_active:
            return REASON_USER_DEACTIVATED
        if context.is_locked and context.locked_until is not None and context.locked_until > self._now():
            return REASON_ACCOUNT_LOCKED
        if not context.organization_id or not context.role:
            return REASON_NO_ORGANIZATION
        return None

    def _refresh(self, refresh_token: str) -> AuthOutcome[TokenPair]:
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except TokenMalformedError:
            return AuthOutcome.fail(ErrorKind.TOKEN_MALFORMED, field="refresh_token")
        except TokenExpiredError:
            return AuthOutcome.fail(ErrorKind.TOKEN_EXPIRED, "Refresh token has expired", reason="expired")
        except TokenInvalidError:
            return AuthOutcome.fail(ErrorKind.TOKEN_INVALID, "Refresh token is invalid")

        token_hash = hash_token(refresh_token)
        session = self.sessions.find_by_hash(token_hash)
        if session is None or session.id != claims.session_id or session.user_id != claims.user_id:
            return AuthOutcome.fail(ErrorKind.SESSION_NOT_FOUND, reason="not_found")
        if not session.is_active or session.revoked_at is not None:
            return AuthOutcome.fail(ErrorKind.SESSION_REVOKED, reason=session.revoked_reason or "session_revoked")

        if session.expires_at <= self._now():
            self.sessions.revoke(session.id, REASON_TOKEN_EXPIRED)
            return AuthOutcome.fail(
                ErrorKind.SESSION_NOT_FOUND,
                reason="expired",
                expired_at=session.expires_at.isoformat(),
            )

        context = self.users.get_user_org_context(session.user_id)
        violation = self._standing_violation(context)
        if violation:
            self.sessions.revoke(session.id, violation)
            log_auth_event(logger, event="refresh.revoked", session_id=session.id, reason=violation)
            locked_until = context.locked_until.isoformat() if violation == REASON_ACCOUNT_LOCKED else None
            return AuthOutcome.fail(ErrorKind.SESSION_REVOKED, reason=violation, locked_until=locked_until)

        pair = self.tokens.issue(
            TokenClaims(
                user_id=session.user_id,
                organization_id=context.organization_id,
                role=context.role,
                session_id=session.id,
            )
        )
        try:
            rotated = self.sessions.rotate(
                session.id,
                expected_hash=token_hash,
                new_hash=hash_token(pair.refresh_token),
                new_expires_at=self.tokens.refresh_expires_at(),
            )
        except Exception:
            logger.exception("session_rotate_failed session_id=%s", session.id)
            return AuthOutcome.fail(ErrorKind.INTERNAL)
        if not rotated:
            log_auth_event(logger, event="refresh.stale", level=logging.WARNING, session_id=session.id)
            return AuthOutcome.fail(ErrorKind.SESSION_REVOKED, reason="stale_refresh_token")

        log_auth_event(logger, event="refresh.success", session_id=session.id)
        return AuthOutcome.success(pair)

    # -- logout -----------------------------------------------------------------

    def logout(self, user_id: str, refresh_token: str | None, all_devices: bool = False) -> AuthOutcome[LogoutResult]:
        return self._run("logout", self._logout, user_id, refresh_token, all_devices)

    def _logout(self, user_id: str, refresh_token: str | None, all_devices: bool) -> AuthOutcome[LogoutResult]:
        if all_devices:
            count = self.sessions.revoke_all_for_user(user_id, REASON_USER_LOGOUT_ALL)
            log_auth_event(logger, event="logout.all_devices", user_id=user_id, sessions=count)
            return AuthOutcome.success(LogoutResult("Successfully logged out from all devices", count))

        if not refresh_token:
            return AuthOutcome.fail(ErrorKind.TOKEN_MALFORMED, "Refresh token is required", field="refresh_token")

        session = self.sessions.find_by_hash(hash_token(refresh_token))
        if session is None:
            return AuthOutcome.fail(ErrorKind.SESSION_NOT_FOUND, reason="not_found")
        if not session.is_active or session.revoked_at is not None:
            return AuthOutcome.fail(ErrorKind.SESSION_REVOKED, reason=session.revoked_reason or "session_revoked")
        if session.user_id != user_id:
            return AuthOutcome.fail(ErrorKind.UNAUTHORIZED)

        self.sessions.revoke(session.id, REASON_USER_LOGOUT)
        log_auth_event(logger, event="logout", user_id=user_id, session_id=session.id)
        return AuthOutcome.success(LogoutResult("Successfully logged out", 1))

    # -- helpers for callers ----------------------------------------------------

    def authenticate_access(self, access_token: str) -> AuthOutcome[TokenClaims]:
        try:
            return AuthOutcome.success(self.tokens.verify_access(access_token))
        except TokenMalformedError:
            return AuthOutcome.fail(ErrorKind.TOKEN_MALFORMED, field="access_token")
        except TokenExpiredError:
            return AuthOutcome.fail(ErrorKind.TOKEN_EXPIRED, "Access token has expired")
        except TokenInvalidError:
            return AuthOutcome.fail(ErrorKind.TOKEN_INVALID, "Access token is invalid")

    def active_sessions(self, user_id: str) -> AuthOutcome[list[dict]]:
        return self._run("sessions", self._active_sessions, user_id)

    def _active_sessions(self, user_id: str) -> AuthOutcome[list[dict]]:
        now = self._now()
        return AuthOutcome.success(
            [
                {
                    "id": s.id,
                    "device_id": s.device_id,
                    "device_name": s.device_name,
                    "platform": s.platform,
                    "created_at": s.created_at.isoformat(),
                    "last_activity_at": s.last_activity_at.isoformat() if s.last_activity_at else None,
                    "expires_at": s.expires_at.isoformat(),
                }
                for s in self.sessions.list_active_for_user(user_id)
                if s.expires_at > now
            ]
        )
