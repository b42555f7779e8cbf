from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    OTP_INVALID = "OTP_INVALID"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    OTP_DELIVERY_FAILED = "OTP_DELIVERY_FAILED"
    TOKEN_MALFORMED = "TOKEN_MALFORMED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_REVOKED = "SESSION_REVOKED"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL = "INTERNAL"


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.OTP_INVALID: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.OTP_DELIVERY_FAILED: 502,
    ErrorKind.TOKEN_MALFORMED: 400,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.SESSION_NOT_FOUND: 401,
    ErrorKind.SESSION_REVOKED: 403,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INTERNAL: 500,
}

DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: "Too many OTP requests. Please try later",
    ErrorKind.OTP_INVALID: "OTP is invalid or expired",
    ErrorKind.ACCOUNT_LOCKED: "Too many failed attempts. Account is temporarily locked",
    ErrorKind.OTP_DELIVERY_FAILED: "Failed to send OTP. Please try again",
    ErrorKind.TOKEN_MALFORMED: "Token must be a valid JWT",
    ErrorKind.TOKEN_EXPIRED: "Token has expired",
    ErrorKind.TOKEN_INVALID: "Token is invalid",
    ErrorKind.SESSION_NOT_FOUND: "Refresh token is invalid or expired",
    ErrorKind.SESSION_REVOKED: "This session has been terminated. Please login again",
    ErrorKind.UNAUTHORIZED: "Invalid or expired access token",
    ErrorKind.INTERNAL: "An unexpected error occurred",
}


@dataclass(frozen=True)
class AuthFailure:
    kind: ErrorKind
    message: str
    details: dict = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]


@dataclass(frozen=True)
class AuthOutcome(Generic[T]):
    value: T | None = None
    failure: AuthFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "AuthOutcome[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str | None = None, **details) -> "AuthOutcome[T]":
        clean = {k: v for k, v in details.items() if v is not None}
        return cls(failure=AuthFailure(kind=kind, message=message or DEFAULT_MESSAGES[kind], details=clean))


class AuthFailureError(Exception):
    """Raised at the HTTP boundary so the app renders `failure` with its status code."""

    def __init__(self, failure: AuthFailure):
        super().__init__(failure.message)
        self.failure = failure
