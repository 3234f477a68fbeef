# backend/app/schemas/file.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Literal, Optional


class FileCreate(BaseModel):
    """
    Metadata sent alongside an upload. Content itself arrives as the
    multipart body and is already ciphertext.
    """
    filename_encrypted: str = Field(..., min_length=1)
    filename_iv: str = Field(..., min_length=1, max_length=64)
    file_key_encrypted: str = Field(..., min_length=1)
    encryption_algorithm: str = Field("AES-256-GCM", max_length=32)
    file_size: int = Field(..., ge=0)
    # What the ledger charges
    encrypted_size: int = Field(..., gt=0)
    file_hash: str = Field(..., min_length=1, max_length=128)
    mime_type: Optional[str] = Field(None, max_length=255)
    parent_folder_id: Optional[str] = None


class FileUpdate(BaseModel):
    # parent_folder_id explicitly set to null moves the file to root;
    # leaving it out keeps the current parent
    filename_encrypted: Optional[str] = Field(None, min_length=1)
    filename_iv: Optional[str] = Field(None, min_length=1, max_length=64)
    parent_folder_id: Optional[str] = None


class FileResponse(BaseModel):
    id: str
    user_id: str
    parent_folder_id: Optional[str]
    filename_encrypted: str
    filename_iv: str
    file_key_encrypted: str
    encryption_algorithm: str
    file_size: int
    encrypted_size: int
    mime_type: Optional[str]
    file_hash: str
    version: int
    has_thumbnail: bool = False
    is_deleted: bool
    deleted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class FileListResponse(BaseModel):
    items: List[FileResponse]
    total: int
    limit: int
    offset: int


class FileListParams(BaseModel):
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)
    sort_by: Literal["created_at", "updated_at", "file_size"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class FileVersionCreate(BaseModel):
    file_key_encrypted: str = Field(..., min_length=1)
    file_size: int = Field(..., gt=0)


class FileVersionResponse(BaseModel):
    id: str
    file_id: str
    version_number: int
    file_size: int
    file_key_encrypted: str
    created_at: datetime

    class Config:
        from_attributes = True


class FileMoveRequest(BaseModel):
    file_ids: List[str] = Field(..., min_length=1, max_length=500)
    target_folder_id: Optional[str] = None


class FileMoveResponse(BaseModel):
    moved: int
