# backend/app/api/v1/endpoints/auth.py
from fastapi import APIRouter, Depends, Request, status
from typing import List

from backend.app.api.rate_limit import auth_limit, sensitive_limit
from backend.app.api.deps import get_services, get_context, get_current_session, get_current_user
from backend.app.models.user import User
from backend.app.schemas.auth import (
    RegisterRequest, LoginRequest, LoginResponse, TokenResponse, PasswordChangeRequest,
    TOTPSetupResponse, TOTPEnableRequest, TOTPDisableRequest, SessionResponse, MessageResponse,
)
from backend.app.schemas.user import UserResponse
from backend.app.services import Services
from backend.app.services.auth import AuthenticatedSession, IssuedSession
from backend.app.services.context import RequestContext

router = APIRouter()


def _token_response(issued: IssuedSession) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        session_id=issued.session.id,
        expires_at=issued.session.expires_at,
        user=UserResponse.model_validate(issued.user),
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
@auth_limit
async def register(request: Request, user_in: RegisterRequest,
                   services: Services = Depends(get_services),
                   context: RequestContext = Depends(get_context)):
    issued = await services.auth.register(user_in, context)
    return _token_response(issued)


@router.post("/login", response_model=LoginResponse)
@auth_limit
async def login(request: Request, credentials: LoginRequest,
                services: Services = Depends(get_services),
                context: RequestContext = Depends(get_context)):
    result = await services.auth.login(credentials, context)
    if result.totp_required:
        return LoginResponse(totp_required=True)
    return LoginResponse(**_token_response(result.issued).model_dump())


@router.post("/logout", response_model=MessageResponse)
async def logout(session: AuthenticatedSession = Depends(get_current_session),
                 services: Services = Depends(get_services),
                 context: RequestContext = Depends(get_context)):
    await services.auth.logout(session.session_id, session.user_id, context)
    return {"message": "Logged out"}


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(session: AuthenticatedSession = Depends(get_current_session),
                     services: Services = Depends(get_services),
                     context: RequestContext = Depends(get_context)):
    count = await services.auth.logout_all(session.user_id, context)
    return {"message": f"Logged out of {count} sessions"}


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/change-password", response_model=MessageResponse)
@sensitive_limit
async def change_password(request: Request, body: PasswordChangeRequest,
                          current_user: User = Depends(get_current_user),
                          services: Services = Depends(get_services),
                          context: RequestContext = Depends(get_context)):
    await services.auth.change_password(current_user.id, body.current_password, body.new_password, context)
    return {"message": "Password changed, please log in again"}


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(session: AuthenticatedSession = Depends(get_current_session),
                        services: Services = Depends(get_services)):
    sessions = await services.auth.list_sessions(session.user_id)
    return [
        SessionResponse.model_validate(s).model_copy(update={"is_current": s.id == session.session_id})
        for s in sessions
    ]


# --- Two-factor authentication ---

@router.post("/2fa/setup", response_model=TOTPSetupResponse)
async def setup_2fa(current_user: User = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    enrollment = await services.auth.setup_totp(current_user.id)
    return TOTPSetupResponse(secret=enrollment.secret, uri=enrollment.uri, qr_code=enrollment.qr_code)


@router.post("/2fa/enable", response_model=MessageResponse)
@sensitive_limit
async def enable_2fa(request: Request, body: TOTPEnableRequest,
                     current_user: User = Depends(get_current_user),
                     services: Services = Depends(get_services),
                     context: RequestContext = Depends(get_context)):
    await services.auth.enable_totp(current_user.id, body.secret, body.code, context)
    return {"message": "Two-factor authentication enabled"}


@router.post("/2fa/disable", response_model=MessageResponse)
@sensitive_limit
async def disable_2fa(request: Request, body: TOTPDisableRequest,
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services),
                      context: RequestContext = Depends(get_context)):
    await services.auth.disable_totp(current_user.id, body.password, context)
    return {"message": "Two-factor authentication disabled"}
