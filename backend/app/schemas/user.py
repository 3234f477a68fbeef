# backend/app/schemas/user.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, List, Optional


# Never carries password_hash or the TOTP envelope
class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    kdf_salt: str
    master_key_encrypted: str
    public_key: str
    private_key_encrypted: str
    totp_enabled: bool
    storage_quota: int
    storage_used: int
    is_active: bool
    created_at: datetime
    last_login: Optional[datetime] = None

    class Config:
        from_attributes = True


class StorageStats(BaseModel):
    storage_quota: int
    storage_used: int
    storage_available: int
    usage_percentage: float
    file_count: int
    trashed_file_count: int


class ActivitySummary(BaseModel):
    days: int
    total_events: int
    actions: Dict[str, int]
    last_login: Optional[datetime] = None


class AuditLogResponse(BaseModel):
    id: int
    action: str
    resource_type: Optional[str]
    resource_id: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    success: bool
    error_message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
    limit: int
    offset: int


class AccountDeleteRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)
