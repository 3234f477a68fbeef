# backend/app/api/v1/endpoints/folders.py
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, status

from backend.app.api.deps import get_services, get_context, get_current_user
from backend.app.db.repository import UNSET
from backend.app.models import Folder
from backend.app.models.user import User
from backend.app.schemas.file import FileResponse
from backend.app.schemas.folder import (
    FolderCreate, FolderUpdate, FolderResponse, FolderListResponse, FolderTreeNode,
    Breadcrumb, FolderContents, FolderDeleteResult, FolderRestoreResult,
)
from backend.app.services import Services
from backend.app.services.context import RequestContext

router = APIRouter()


def _folder_response(folder: Folder, counts: Optional[Dict[str, Tuple[int, int]]] = None) -> FolderResponse:
    response = FolderResponse.model_validate(folder)
    if counts and folder.id in counts:
        files, subfolders = counts[folder.id]
        response = response.model_copy(update={"file_count": files, "subfolder_count": subfolders})
    return response


@router.post("", response_model=FolderResponse, status_code=status.HTTP_201_CREATED)
async def create_folder(body: FolderCreate,
                        current_user: User = Depends(get_current_user),
                        services: Services = Depends(get_services),
                        context: RequestContext = Depends(get_context)):
    folder = await services.folders.create(current_user.id, body, context)
    return _folder_response(folder)


@router.get("", response_model=FolderListResponse)
async def list_folders(parent_id: Optional[str] = Query(None),
                       root: bool = Query(False, description="Only folders at the root level"),
                       trash: bool = Query(False),
                       limit: int = Query(100, ge=1, le=500),
                       offset: int = Query(0, ge=0),
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services)):
    parent = parent_id if parent_id is not None else (None if root else UNSET)
    folders, total, counts = await services.folders.list(current_user.id, parent, is_deleted=trash,
                                                         limit=limit, offset=offset)
    return {
        "items": [_folder_response(f, counts) for f in folders],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/tree", response_model=List[FolderTreeNode])
async def folder_tree(max_depth: int = Query(10, ge=1, le=100),
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services)):
    return await services.folders.tree(current_user.id, max_depth)


@router.get("/root/contents", response_model=FolderContents)
async def root_contents(current_user: User = Depends(get_current_user),
                        services: Services = Depends(get_services)):
    return await _contents(None, current_user, services)


@router.get("/{folder_id}", response_model=FolderContents)
async def get_folder(folder_id: str,
                     current_user: User = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    return await _contents(folder_id, current_user, services)


async def _contents(folder_id: Optional[str], current_user: User, services: Services) -> FolderContents:
    contents = await services.folders.get_with_contents(folder_id, current_user.id)
    return FolderContents(
        folder=_folder_response(contents.folder, contents.counts) if contents.folder else None,
        breadcrumbs=[Breadcrumb(id=f.id, name_encrypted=f.name_encrypted, name_iv=f.name_iv)
                     for f in contents.breadcrumbs],
        folders=[_folder_response(f, contents.counts) for f in contents.folders],
        files=[FileResponse.model_validate(f) for f in contents.files],
    )


@router.get("/{folder_id}/breadcrumbs", response_model=List[Breadcrumb])
async def breadcrumbs(folder_id: str,
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services)):
    trail = await services.folders.breadcrumbs(folder_id, current_user.id)
    return [Breadcrumb(id=f.id, name_encrypted=f.name_encrypted, name_iv=f.name_iv) for f in trail]


@router.patch("/{folder_id}", response_model=FolderResponse)
async def update_folder(folder_id: str, body: FolderUpdate,
                        current_user: User = Depends(get_current_user),
                        services: Services = Depends(get_services),
                        context: RequestContext = Depends(get_context)):
    folder = await services.folders.update(folder_id, current_user.id, body, context)
    return _folder_response(folder)


@router.delete("/{folder_id}", response_model=FolderDeleteResult)
async def delete_folder(folder_id: str,
                        cascade: bool = Query(False),
                        permanent: bool = Query(False),
                        current_user: User = Depends(get_current_user),
                        services: Services = Depends(get_services),
                        context: RequestContext = Depends(get_context)):
    summary = await services.folders.delete(folder_id, current_user.id, cascade, permanent, context)
    return FolderDeleteResult(folders=summary.folders, files=summary.files,
                              bytes_released=summary.bytes_released, permanent=summary.permanent)


@router.post("/{folder_id}/restore", response_model=FolderRestoreResult)
async def restore_folder(folder_id: str,
                         cascade: bool = Query(True),
                         current_user: User = Depends(get_current_user),
                         services: Services = Depends(get_services),
                         context: RequestContext = Depends(get_context)):
    summary = await services.folders.restore(folder_id, current_user.id, cascade, context)
    return FolderRestoreResult(
        folder=_folder_response(summary.folder),
        restored_folders=summary.restored_folders,
        restored_files=summary.restored_files,
        skipped_file_ids=summary.skipped_file_ids,
    )
