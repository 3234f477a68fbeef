# backend/app/schemas/share.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional


class ShareCreate(BaseModel):
    file_id: str
    # Content key re-wrapped for the link, never the owner's envelope
    file_key_encrypted: str = Field(..., min_length=1)
    password: Optional[str] = Field(None, min_length=1, max_length=128)
    expires_at: Optional[datetime] = None
    max_downloads: Optional[int] = Field(None, ge=1)


class ShareUpdate(BaseModel):
    # Fields explicitly sent as null are cleared (password: null removes protection)
    password: Optional[str] = Field(None, min_length=1, max_length=128)
    expires_at: Optional[datetime] = None
    max_downloads: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class ShareResponse(BaseModel):
    id: str
    file_id: str
    owner_id: str
    share_token: str
    file_key_encrypted: str
    has_password: bool
    expires_at: Optional[datetime]
    max_downloads: Optional[int]
    download_count: int
    is_active: bool
    created_at: datetime
    last_accessed: Optional[datetime]

    class Config:
        from_attributes = True


class ShareListResponse(BaseModel):
    items: List[ShareResponse]
    total: int
    limit: int
    offset: int


class PublicShareResponse(BaseModel):
    """What an anonymous token holder learns: enough to decrypt, nothing about the owner."""
    share_token: str
    file_key_encrypted: str
    filename_encrypted: str
    filename_iv: str
    encryption_algorithm: str
    mime_type: Optional[str]
    file_size: int
    encrypted_size: int
    expires_at: Optional[datetime]
    downloads_remaining: Optional[int]


class ShareFileStats(BaseModel):
    file_id: str
    total_shares: int
    active_shares: int
    total_downloads: int
