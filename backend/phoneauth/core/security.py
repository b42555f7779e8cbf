import hashlib
import hmac
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from phoneauth.core.utils import utc_now_naive

ALGORITHM = "HS256"
TOKEN_TYPE = "Bearer"
JWT_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")


class TokenError(Exception):
    pass


class TokenMalformedError(TokenError):
    pass


class TokenExpiredError(TokenError):
    pass


class TokenInvalidError(TokenError):
    pass


class TokenClaimsError(ValueError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    organization_id: str
    role: str
    session_id: str
    jti: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_otp_code(code: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_otp_code(code: str, code_hash: str, secret: str) -> bool:
    return hmac.compare_digest(hash_otp_code(code, secret), code_hash)


def _epoch(moment: datetime) -> int:
    return int(moment.replace(tzinfo=timezone.utc).timestamp())


class TokenIssuer:
    """Signs and verifies access/refresh JWT pairs.

    Access and refresh tokens of one issuance share `sid` but are signed with their own
    secret and carry a `typ` claim, so a refresh token never passes as an access token.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 7 * 86400,
        issuer: str = "payroll-backend",
        audience: str = "payroll-app",
        clock: Callable[[], datetime] = utc_now_naive,
    ):
        if not access_secret or not refresh_secret:
            raise ValueError("Token signing secrets must not be empty")
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ValueError("Token lifetimes must be positive")
        self._secrets = {"access": access_secret, "refresh": refresh_secret}
        self._ttls = {"access": int(access_ttl_seconds), "refresh": int(refresh_ttl_seconds)}
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttls["access"]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls["refresh"]

    @staticmethod
    def _validate_claims(claims: TokenClaims) -> None:
        for field in ("user_id", "organization_id", "role", "session_id"):
            value = getattr(claims, field)
            if not isinstance(value, str) or not value.strip():
                raise TokenClaimsError(f"{field} is required and must be a non-empty string")

    def _encode(self, claims: TokenClaims, token_type: str) -> str:
        now = self._clock().replace(microsecond=0)
        payload = {
            "userId": claims.user_id,
            "organizationId": claims.organization_id,
            "role": claims.role,
            "sid": claims.session_id,
            "jti": secrets.token_hex(16),
            "typ": token_type,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": _epoch(now),
            "exp": _epoch(now + timedelta(seconds=self._ttls[token_type])),
        }
        return jwt.encode(payload, self._secrets[token_type], algorithm=ALGORITHM)

    def issue(self, claims: TokenClaims) -> TokenPair:
        self._validate_claims(claims)
        return TokenPair(
            access_token=self._encode(claims, "access"),
            refresh_token=self._encode(claims, "refresh"),
            expires_in=self._ttls["access"],
        )

    def refresh_expires_at(self) -> datetime:
        """Naive UTC expiry for a refresh token issued now, used for the session row."""
        return self._clock().replace(microsecond=0) + timedelta(seconds=self._ttls["refresh"])

    def _decode(self, token: str, token_type: str) -> TokenClaims:
        if not isinstance(token, str) or not JWT_TOKEN_RE.match(token):
            raise TokenMalformedError(f"{token_type} token is not a well-formed JWT")
        try:
            payload = jwt.decode(
                token,
                self._secrets[token_type],
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError(f"{token_type} token has expired") from exc
        except JWTError as exc:
            raise TokenInvalidError(f"Invalid {token_type} token") from exc

        if payload.get("typ") != token_type:
            raise TokenInvalidError(f"Invalid {token_type} token")
        try:
            claims = TokenClaims(
                user_id=payload["userId"],
                organization_id=payload["organizationId"],
                role=payload["role"],
                session_id=payload["sid"],
                jti=payload.get("jti"),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc).replace(tzinfo=None),
            )
            self._validate_claims(claims)
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError(f"Invalid {token_type} token") from exc
        return claims

    def verify_access(self, token: str) -> TokenClaims:
        return self._decode(token, "access")

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._decode(token, "refresh")
