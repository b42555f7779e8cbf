from phoneauth.db.models.organization import Organization, OrganizationMember
from phoneauth.db.models.security_event import SecurityEvent
from phoneauth.db.models.user import User
from phoneauth.db.models.user_session import UserSession

__all__ = [
    "Organization",
    "OrganizationMember",
    "SecurityEvent",
    "User",
    "UserSession",
]
