from collections.abc import Generator

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from phoneauth.core.container import AuthContainer
from phoneauth.core.errors import AuthFailureError, AuthOutcome, ErrorKind
from phoneauth.core.security import TokenClaims
from phoneauth.services.authentication import AuthenticationService

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> AuthContainer:
    return request.app.state.container


def get_db(container: AuthContainer = Depends(get_container)) -> Generator[Session, None, None]:
    db = container.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_auth_service(
    db: Session = Depends(get_db),
    container: AuthContainer = Depends(get_container),
) -> AuthenticationService:
    return container.auth_service(db)


def get_current_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: AuthenticationService = Depends(get_auth_service),
) -> TokenClaims:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise AuthFailureError(AuthOutcome.fail(ErrorKind.UNAUTHORIZED, "Authorization header is missing").failure)
    outcome = service.authenticate_access(credentials.credentials)
    if not outcome.ok:
        raise AuthFailureError(outcome.failure)
    return outcome.value


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    if request.client and request.client.host:
        return request.client.host[:64]
    return None
