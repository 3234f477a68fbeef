# backend/app/schemas/folder.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from backend.app.schemas.file import FileResponse


class FolderCreate(BaseModel):
    name_encrypted: str = Field(..., min_length=1)
    name_iv: str = Field(..., min_length=1, max_length=64)
    parent_folder_id: Optional[str] = None


class FolderUpdate(BaseModel):
    # Same convention as FileUpdate: explicit null parent means root
    name_encrypted: Optional[str] = Field(None, min_length=1)
    name_iv: Optional[str] = Field(None, min_length=1, max_length=64)
    parent_folder_id: Optional[str] = None


class FolderResponse(BaseModel):
    id: str
    user_id: str
    parent_folder_id: Optional[str]
    name_encrypted: str
    name_iv: str
    is_deleted: bool
    deleted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    file_count: int = 0
    subfolder_count: int = 0

    class Config:
        from_attributes = True


class FolderListResponse(BaseModel):
    items: List[FolderResponse]
    total: int
    limit: int
    offset: int


class FolderTreeNode(BaseModel):
    id: str
    parent_folder_id: Optional[str]
    name_encrypted: str
    name_iv: str
    children: List["FolderTreeNode"] = []


class Breadcrumb(BaseModel):
    id: str
    name_encrypted: str
    name_iv: str


class FolderContents(BaseModel):
    # None when listing the root
    folder: Optional[FolderResponse]
    breadcrumbs: List[Breadcrumb]
    folders: List[FolderResponse]
    files: List[FileResponse]


class FolderDeleteResult(BaseModel):
    folders: int
    files: int
    bytes_released: int
    permanent: bool


class FolderRestoreResult(BaseModel):
    folder: FolderResponse
    restored_folders: int
    restored_files: int
    # Trashed files that no longer fit in the quota stay in trash
    skipped_file_ids: List[str]


FolderTreeNode.model_rebuild()
