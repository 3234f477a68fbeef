# backend/app/schemas/auth.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from backend.app.schemas.user import UserResponse

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_-]+$"


class RegisterRequest(BaseModel):
    """
    Everything but the password is produced client-side: the server stores
    the key envelopes as opaque strings and hands them back on login.
    """
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    username: str = Field(..., min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    # Strength policy is enforced by the auth service
    password: str = Field(..., max_length=128)
    kdf_salt: str = Field(..., min_length=16, max_length=64)
    master_key_encrypted: str = Field(..., min_length=1)
    public_key: str = Field(..., min_length=1)
    private_key_encrypted: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    # Email or username
    identifier: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    totp_code: Optional[str] = Field(None, max_length=10)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str
    expires_at: datetime
    user: UserResponse


class LoginResponse(BaseModel):
    """Either a session, or `totp_required=True` with no token."""
    totp_required: bool = False
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    user: Optional[UserResponse] = None


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)


class TOTPSetupResponse(BaseModel):
    secret: str
    uri: str
    # Base64 PNG, render with data:image/png;base64,
    qr_code: str


class TOTPEnableRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=64)
    code: str = Field(..., min_length=6, max_length=10)


class TOTPDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_current: bool = False

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    message: str
