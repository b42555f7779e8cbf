from datetime import datetime

from sqlalchemy.orm import Session

from phoneauth.core.utils import utc_now_naive
from phoneauth.db.models.security_event import SecurityEvent

EVENT_ACCOUNT_LOCKED = "auth.account_locked"
EVENT_SESSION_REVOKED = "auth.session_revoked"
EVENT_SESSIONS_REVOKED_ALL = "auth.sessions_revoked_all"

EVENT_SEVERITY_INFO = "info"
EVENT_SEVERITY_WARNING = "warning"
EVENT_SEVERITY_DANGER = "danger"

_DEFAULT_TITLES = {
    EVENT_ACCOUNT_LOCKED: "Account locked after repeated failed verifications",
    EVENT_SESSION_REVOKED: "Session revoked",
    EVENT_SESSIONS_REVOKED_ALL: "All sessions revoked",
}


def emit_security_event(
    db: Session,
    *,
    event_type: str,
    severity: str = EVENT_SEVERITY_INFO,
    title: str | None = None,
    target_user_id: str | None = None,
    meta_json: dict | None = None,
    created_at: datetime | None = None,
) -> SecurityEvent:
    """Stage a security event on the current transaction; the caller commits."""
    event = SecurityEvent(
        event_type=event_type,
        severity=severity,
        title=title or _DEFAULT_TITLES.get(event_type, event_type),
        target_user_id=target_user_id,
        meta_json=meta_json,
        created_at=created_at or utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event
