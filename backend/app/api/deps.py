# backend/app/api/deps.py
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional

from backend.app.core.exceptions import AuthError, NotFoundError
from backend.app.models.user import User
from backend.app.services import Services
from backend.app.services.auth import AuthenticatedSession
from backend.app.services.context import RequestContext

reusable_bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_context(request: Request) -> RequestContext:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return RequestContext(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


async def get_current_session(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(reusable_bearer),
        services: Services = Depends(get_services),
        context: RequestContext = Depends(get_context),
) -> AuthenticatedSession:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("No token provided")
    return await services.auth.validate_session(credentials.credentials, context)


async def get_current_user(
        session: AuthenticatedSession = Depends(get_current_session),
        services: Services = Depends(get_services),
) -> User:
    try:
        user = await services.users.get(session.user_id)
    except NotFoundError:
        raise AuthError("Invalid session")

    if not user.is_active:
        raise AuthError("Account is disabled")

    return user
