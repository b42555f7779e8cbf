import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from phoneauth.core.events import EVENT_SESSIONS_REVOKED_ALL, EVENT_SESSION_REVOKED, emit_security_event
from phoneauth.core.utils import utc_now_naive
from phoneauth.db.models.user_session import UserSession

logger = logging.getLogger(__name__)

PLATFORMS = ("web", "android", "ios")

REASON_USER_LOGOUT = "user_logout"
REASON_USER_LOGOUT_ALL = "user_logout_all_devices"
REASON_TOKEN_EXPIRED = "token_expired"
REASON_USER_NOT_FOUND = "user_not_found"
REASON_USER_DEACTIVATED = "user_deactivated"
REASON_ACCOUNT_LOCKED = "account_locked"
REASON_NO_ORGANIZATION = "no_organization_access"


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str | None = None
    device_name: str | None = None
    platform: str = "web"

    def normalized_platform(self) -> str:
        return self.platform if self.platform in PLATFORMS else "web"


class SessionStore:
    """Refresh-token sessions. Raw tokens never reach this table, only their hashes.

    A session moves from active to revoked exactly once. Rotation and revocation are
    conditional UPDATEs so concurrent callers cannot both win.
    """

    def __init__(self, db: Session, now: Callable[[], datetime] = utc_now_naive):
        self.db = db
        self._now = now

    def create(
        self,
        *,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        device: DeviceInfo | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
    ) -> UserSession:
        device = device or DeviceInfo()
        now = self._now()
        session = UserSession(
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            device_id=device.device_id,
            device_name=device.device_name,
            platform=device.normalized_platform(),
            ip_address=ip_address[:64] if ip_address else None,
            is_active=True,
            expires_at=expires_at,
            last_activity_at=now,
            revoked_at=None,
            revoked_reason=None,
            created_at=now,
        )
        if session_id:
            session.id = session_id
        try:
            self.db.add(session)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return session

    def find_by_hash(self, refresh_token_hash: str) -> UserSession | None:
        return self.db.scalars(
            select(UserSession).where(UserSession.refresh_token_hash == refresh_token_hash).limit(1)
        ).first()

    def find_active_by_hash(self, refresh_token_hash: str) -> UserSession | None:
        return self.db.scalars(
            select(UserSession)
            .where(
                UserSession.refresh_token_hash == refresh_token_hash,
                UserSession.is_active.is_(True),
                UserSession.revoked_at.is_(None),
            )
            .limit(1)
        ).first()

    def list_active_for_user(self, user_id: str) -> list[UserSession]:
        return list(
            self.db.scalars(
                select(UserSession)
                .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
                .order_by(UserSession.created_at.desc())
            )
        )

    def rotate(self, session_id: str, *, expected_hash: str, new_hash: str, new_expires_at: datetime) -> bool:
        """Swap the stored hash only if it still equals `expected_hash` and the session is active."""
        try:
            result = self.db.execute(
                update(UserSession)
                .where(
                    UserSession.id == session_id,
                    UserSession.refresh_token_hash == expected_hash,
                    UserSession.is_active.is_(True),
                )
                .values(
                    refresh_token_hash=new_hash,
                    expires_at=new_expires_at,
                    last_activity_at=self._now(),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
        return result.rowcount == 1

    def revoke(self, session_id: str, reason: str) -> bool:
        """Idempotent. Returns False when the session was already terminal or missing."""
        now = self._now()
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id, UserSession.is_active.is_(True))
            .values(is_active=False, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            session = self.db.get(UserSession, session_id)
            emit_security_event(
                self.db,
                event_type=EVENT_SESSION_REVOKED,
                target_user_id=session.user_id if session else None,
                meta_json={"session_id": session_id, "reason": reason},
                created_at=now,
            )
        self.db.commit()
        self.db.expire_all()
        return changed

    def revoke_all_for_user(self, user_id: str, reason: str) -> int:
        now = self._now()
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .values(is_active=False, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        count = int(result.rowcount or 0)
        if count:
            emit_security_event(
                self.db,
                event_type=EVENT_SESSIONS_REVOKED_ALL,
                target_user_id=user_id,
                meta_json={"reason": reason, "sessions": count},
                created_at=now,
            )
        self.db.commit()
        self.db.expire_all()
        return count
