# backend/app/api/v1/endpoints/files.py
"""
File endpoints.

Uploads are multipart: a `metadata` form field carrying FileCreate as JSON,
the encrypted content as `file` and an optional encrypted `thumbnail`.
Content is streamed to the blob store in chunks.
"""
from typing import AsyncIterator, List, Optional

import pydantic
from fastapi import APIRouter, Depends, File as FileParam, Form, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from backend.app.api.rate_limit import upload_limit
from backend.app.api.deps import get_services, get_context, get_current_user
from backend.app.core.exceptions import ValidationError
from backend.app.db.repository import UNSET
from backend.app.models.user import User
from backend.app.schemas.file import (
    FileCreate, FileUpdate, FileResponse, FileListResponse, FileListParams,
    FileVersionCreate, FileVersionResponse, FileMoveRequest, FileMoveResponse,
)
from backend.app.services import Services
from backend.app.services.context import RequestContext
from backend.app.storage.blob_store import BlobStream, CHUNK_SIZE

router = APIRouter()

THUMBNAIL_MAX_BYTES = 1024 * 1024


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


def _parse_metadata(model, raw: str):
    try:
        return model.model_validate_json(raw)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid metadata", details={"errors": e.errors(include_url=False)})


def _stream_response(stream: BlobStream, mime_type: Optional[str], file_id: str) -> StreamingResponse:
    return StreamingResponse(
        stream,
        media_type="application/octet-stream",
        headers={
            "Content-Length": str(stream.size),
            "Content-Disposition": f'attachment; filename="{file_id}.enc"',
            "X-Original-Mime-Type": mime_type or "application/octet-stream",
        },
    )


@router.post("", response_model=FileResponse, status_code=status.HTTP_201_CREATED)
@upload_limit
async def upload_file(request: Request, metadata: str = Form(...),
                      file: UploadFile = FileParam(...),
                      thumbnail: Optional[UploadFile] = FileParam(None),
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services),
                      context: RequestContext = Depends(get_context)):
    data = _parse_metadata(FileCreate, metadata)
    thumbnail_bytes = None
    if thumbnail is not None:
        thumbnail_bytes = await thumbnail.read(THUMBNAIL_MAX_BYTES + 1)
        if len(thumbnail_bytes) > THUMBNAIL_MAX_BYTES:
            raise ValidationError("Thumbnail too large")
    return await services.files.create(current_user.id, data, _iter_upload(file), thumbnail_bytes, context)


@router.get("", response_model=FileListResponse)
async def list_files(folder_id: Optional[str] = Query(None),
                     root: bool = Query(False, description="Only files at the root level"),
                     params: FileListParams = Depends(),
                     current_user: User = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    parent = folder_id if folder_id is not None else (None if root else UNSET)
    items, total = await services.files.list(current_user.id, parent, params)
    return {"items": items, "total": total, "limit": params.limit, "offset": params.offset}


@router.get("/trash", response_model=FileListResponse)
async def list_trash(limit: int = Query(50, ge=1, le=500),
                     offset: int = Query(0, ge=0),
                     current_user: User = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    items, total = await services.files.list_trash(current_user.id, limit, offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/hash/{file_hash}", response_model=Optional[FileResponse])
async def find_by_hash(file_hash: str,
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services)):
    return await services.files.find_by_hash(current_user.id, file_hash)


@router.post("/move", response_model=FileMoveResponse)
async def move_files(body: FileMoveRequest,
                     current_user: User = Depends(get_current_user),
                     services: Services = Depends(get_services),
                     context: RequestContext = Depends(get_context)):
    moved = await services.files.move_files(body.file_ids, current_user.id, body.target_folder_id, context)
    return {"moved": moved}


@router.get("/{file_id}", response_model=FileResponse)
async def get_file(file_id: str,
                   current_user: User = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    return await services.files.get(file_id, current_user.id)


@router.get("/{file_id}/download")
async def download_file(file_id: str,
                        current_user: User = Depends(get_current_user),
                        services: Services = Depends(get_services),
                        context: RequestContext = Depends(get_context)):
    file, stream = await services.files.download(file_id, current_user.id, context)
    return _stream_response(stream, file.mime_type, file.id)


@router.get("/{file_id}/thumbnail")
async def download_thumbnail(file_id: str,
                             current_user: User = Depends(get_current_user),
                             services: Services = Depends(get_services)):
    stream = await services.files.download_thumbnail(file_id, current_user.id)
    return StreamingResponse(stream, media_type="application/octet-stream",
                             headers={"Content-Length": str(stream.size)})


@router.patch("/{file_id}", response_model=FileResponse)
async def update_file(file_id: str, body: FileUpdate,
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services),
                      context: RequestContext = Depends(get_context)):
    return await services.files.update(file_id, current_user.id, body, context)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(file_id: str,
                      permanent: bool = Query(False),
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services),
                      context: RequestContext = Depends(get_context)):
    await services.files.delete(file_id, current_user.id, permanent, context)


@router.post("/{file_id}/restore", response_model=FileResponse)
async def restore_file(file_id: str,
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services),
                       context: RequestContext = Depends(get_context)):
    return await services.files.restore(file_id, current_user.id, context)


@router.post("/{file_id}/versions", response_model=FileVersionResponse, status_code=status.HTTP_201_CREATED)
@upload_limit
async def create_version(request: Request, file_id: str,
                         metadata: str = Form(...),
                         file: UploadFile = FileParam(...),
                         current_user: User = Depends(get_current_user),
                         services: Services = Depends(get_services),
                         context: RequestContext = Depends(get_context)):
    data = _parse_metadata(FileVersionCreate, metadata)
    return await services.files.create_version(file_id, current_user.id, data, _iter_upload(file), context)


@router.get("/{file_id}/versions", response_model=List[FileVersionResponse])
async def list_versions(file_id: str,
                        current_user: User = Depends(get_current_user),
                        services: Services = Depends(get_services)):
    return await services.files.list_versions(file_id, current_user.id)


@router.get("/{file_id}/versions/{version_number}/download")
async def download_version(file_id: str, version_number: int,
                           current_user: User = Depends(get_current_user),
                           services: Services = Depends(get_services)):
    version, stream = await services.files.download_version(file_id, version_number, current_user.id)
    return _stream_response(stream, None, f"{file_id}.v{version.version_number}")
