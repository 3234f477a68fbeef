# backend/app/security/tokens.py
"""
Session-bound JWT access tokens.

A token is only a pointer to a server-side session: the signature proves we
issued it, the session row proves it has not been revoked.
"""
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from jose import jwt, JWTError, ExpiredSignatureError

from backend.app.core.config import Settings
from backend.app.core.exceptions import AuthError

TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    expires_at: datetime


class ExpiredTokenError(AuthError):
    """Signed by us but past its exp. Carries the claims so the session row can be purged."""

    def __init__(self, claims: TokenClaims):
        super().__init__("Session expired")
        self.claims = claims


def create_access_token(settings: Settings, user_id: str, session_id: str,
                        issued_at: datetime, expires_at: datetime) -> str:
    to_encode = {
        "sub": user_id,
        "sid": session_id,
        "type": TOKEN_TYPE,
        "iss": settings.JWT_ISSUER,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _decode(settings: Settings, token: str, verify_exp: bool = True) -> dict:
    return jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[settings.ALGORITHM],
        issuer=settings.JWT_ISSUER,
        options={"verify_exp": verify_exp},
    )


def _claims_from(payload: dict) -> TokenClaims:
    user_id: Optional[str] = payload.get("sub")
    session_id: Optional[str] = payload.get("sid")
    if payload.get("type") != TOKEN_TYPE or not user_id or not session_id or "exp" not in payload:
        raise AuthError("Invalid token")

    return TokenClaims(
        user_id=user_id,
        session_id=session_id,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def decode_access_token(settings: Settings, token: str) -> TokenClaims:
    try:
        payload = _decode(settings, token)
    except ExpiredSignatureError:
        # Signature is good; recheck the other claims with exp ignored
        try:
            payload = _decode(settings, token, verify_exp=False)
        except JWTError:
            raise AuthError("Invalid token")
        raise ExpiredTokenError(_claims_from(payload))
    except JWTError:
        raise AuthError("Invalid token")

    return _claims_from(payload)


def hash_token(token: str) -> str:
    """SHA-256 hex digest stored in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_compare(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def generate_share_token() -> str:
    # 32 random bytes: 256 bits of entropy, 43 URL-safe characters
    return secrets.token_urlsafe(32)
