import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from phoneauth.core.utils import utc_now_naive
from phoneauth.db.models.organization import Organization, OrganizationMember
from phoneauth.db.models.user import User

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION_NAME = "My Business"
OWNER_ROLE = "owner"
PERMISSION_MODULES = ("employees", "attendance", "leaves", "payroll", "payments", "advances", "loans")


def default_owner_permissions() -> dict[str, list[str]]:
    permissions = {module: ["create", "read", "update", "delete"] for module in PERMISSION_MODULES}
    permissions["reports"] = ["read", "export"]
    return permissions


def default_user_name(phone_number: str) -> str:
    return f"User {phone_number[-4:]}"


@dataclass(frozen=True)
class OrgContext:
    organization_id: str | None
    role: str | None
    is_active: bool
    is_locked: bool = False
    locked_until: datetime | None = None


@dataclass(frozen=True)
class BootstrapResult:
    user: User
    organization_id: str
    role: str


class UserRepository:
    def __init__(self, db: Session, now: Callable[[], datetime] = utc_now_naive):
        self.db = db
        self._now = now

    def find_user_by_phone(self, phone_number: str) -> User | None:
        stmt = (
            select(User)
            .where(User.phone_number == phone_number)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return self.db.scalars(stmt).first()

    def get_user(self, user_id: str) -> User | None:
        # counters and lock columns change through bulk UPDATEs, so reload the row
        return self.db.get(User, user_id, populate_existing=True)

    def create_user_with_default_org(self, phone_number: str, name: str | None = None) -> BootstrapResult:
        """User, default organization and owner membership are committed together or not at all."""
        now = self._now()
        try:
            user = User(
                phone_number=phone_number,
                name=name or default_user_name(phone_number),
                phone_verified=True,
                is_active=True,
                is_locked=False,
                failed_login_attempts=0,
                created_at=now,
            )
            self.db.add(user)
            self.db.flush()

            org = Organization(
                name=DEFAULT_ORGANIZATION_NAME,
                phone_number=phone_number,
                setup_complete=False,
                created_by_user_id=user.id,
                created_at=now,
            )
            self.db.add(org)
            self.db.flush()

            self.db.add(
                OrganizationMember(
                    organization_id=org.id,
                    user_id=user.id,
                    role=OWNER_ROLE,
                    permissions=default_owner_permissions(),
                    is_active=True,
                    joined_at=now,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return BootstrapResult(user=user, organization_id=org.id, role=OWNER_ROLE)

    def get_user_org_context(self, user_id: str) -> OrgContext | None:
        user = self.get_user(user_id)
        if user is None:
            return None
        membership = self.db.scalars(
            select(OrganizationMember)
            .where(OrganizationMember.user_id == user_id, OrganizationMember.is_active.is_(True))
            .order_by(OrganizationMember.joined_at.asc())
            .limit(1)
        ).first()
        return OrgContext(
            organization_id=membership.organization_id if membership else None,
            role=membership.role if membership else None,
            is_active=bool(user.is_active),
            is_locked=bool(user.is_locked),
            locked_until=user.locked_until,
        )

    def increment_failed_attempts(self, user_id: str) -> int:
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                failed_login_attempts=User.failed_login_attempts + 1,
                last_failed_login_at=self._now(),
            )
        )
        self.db.commit()
        return int(self.db.scalar(select(User.failed_login_attempts).where(User.id == user_id)) or 0)

    def set_failed_attempts(self, user_id: str, attempts: int) -> None:
        self.db.execute(update(User).where(User.id == user_id).values(failed_login_attempts=attempts))
        self.db.commit()

    def lock(self, user_id: str, until: datetime, reason: str = "Too many failed login attempts") -> bool:
        """Lock the user unless a lock is already running. Returns whether this call locked it."""
        result = self.db.execute(
            update(User)
            .where(User.id == user_id, self._lock_not_running())
            .values(is_locked=True, locked_until=until, locked_reason=reason)
        )
        self.db.commit()
        return result.rowcount > 0

    def clear_lock(self, user_id: str, *, expired_only: bool = False) -> None:
        stmt = update(User).where(User.id == user_id)
        if expired_only:
            stmt = stmt.where(self._lock_not_running())
        self.db.execute(stmt.values(is_locked=False, locked_until=None, locked_reason=None))
        self.db.commit()

    def _lock_not_running(self):
        return or_(
            User.is_locked.is_(False),
            User.locked_until.is_(None),
            User.locked_until <= self._now(),
        )

    def touch_login(self, user_id: str, ip_address: str | None) -> None:
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                last_login_at=self._now(),
                last_login_ip=ip_address[:64] if ip_address else None,
                failed_login_attempts=0,
                last_failed_login_at=None,
            )
        )
        self.db.commit()
