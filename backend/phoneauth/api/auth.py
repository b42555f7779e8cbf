from fastapi import APIRouter, Depends, Request

from phoneauth.api.deps import client_ip, get_auth_service, get_current_claims
from phoneauth.core.api_response import success_response_payload
from phoneauth.core.errors import AuthFailureError, AuthOutcome
from phoneauth.core.security import TokenClaims
from phoneauth.schemas.auth import LogoutIn, RefreshTokenIn, SendOtpIn, VerifyOtpIn
from phoneauth.services.authentication import AuthenticationService

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _unwrap(outcome: AuthOutcome):
    if not outcome.ok:
        raise AuthFailureError(outcome.failure)
    return outcome.value


@router.post("/send-otp")
def send_otp(
    payload: SendOtpIn,
    request: Request,
    service: AuthenticationService = Depends(get_auth_service),
):
    sent = _unwrap(service.send_challenge(payload.phone_number, client_ip(request)))
    return success_response_payload(request, data=sent.as_dict())


@router.post("/verify-otp")
def verify_otp(
    payload: VerifyOtpIn,
    request: Request,
    service: AuthenticationService = Depends(get_auth_service),
):
    device = payload.device_info.to_device() if payload.device_info else None
    result = _unwrap(service.verify_and_login(payload.phone_number, payload.otp, device, client_ip(request)))
    return success_response_payload(request, data=result.as_dict())


@router.post("/refresh-token")
def refresh_token(
    payload: RefreshTokenIn,
    request: Request,
    service: AuthenticationService = Depends(get_auth_service),
):
    pair = _unwrap(service.refresh(payload.refresh_token))
    return success_response_payload(request, data=pair.as_dict())


@router.post("/logout")
def logout(
    payload: LogoutIn,
    request: Request,
    claims: TokenClaims = Depends(get_current_claims),
    service: AuthenticationService = Depends(get_auth_service),
):
    result = _unwrap(service.logout(claims.user_id, payload.refresh_token, payload.all_devices))
    return success_response_payload(request, data=result.as_dict())


@router.get("/sessions")
def list_sessions(
    request: Request,
    claims: TokenClaims = Depends(get_current_claims),
    service: AuthenticationService = Depends(get_auth_service),
):
    sessions = _unwrap(service.active_sessions(claims.user_id))
    for item in sessions:
        item["is_current"] = item["id"] == claims.session_id
    return success_response_payload(request, data=sessions, meta={"total": len(sessions)})
