# backend/app/api/v1/endpoints/shares.py
"""
Share endpoints.

Owner routes need a session. The /public routes are anonymous: the token in
the path is the credential, and a share password travels in the
X-Share-Password header so it never lands in access logs.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import StreamingResponse

from backend.app.api.rate_limit import public_share_limit
from backend.app.api.deps import get_services, get_context, get_current_user
from backend.app.models.user import User
from backend.app.schemas.share import (
    ShareCreate, ShareUpdate, ShareResponse, ShareListResponse, PublicShareResponse, ShareFileStats,
)
from backend.app.services import Services
from backend.app.services.context import RequestContext
from backend.app.services.shares import ResolvedShare

router = APIRouter()


def _public_response(resolved: ResolvedShare) -> PublicShareResponse:
    return PublicShareResponse(
        share_token=resolved.share_token,
        file_key_encrypted=resolved.file_key_encrypted,
        filename_encrypted=resolved.filename_encrypted,
        filename_iv=resolved.filename_iv,
        encryption_algorithm=resolved.encryption_algorithm,
        mime_type=resolved.mime_type,
        file_size=resolved.file_size,
        encrypted_size=resolved.encrypted_size,
        expires_at=resolved.expires_at,
        downloads_remaining=resolved.downloads_remaining,
    )


# --- Anonymous access ---

@router.get("/public/{share_token}", response_model=PublicShareResponse)
@public_share_limit
async def public_metadata(request: Request, share_token: str,
                          x_share_password: Optional[str] = Header(None),
                          services: Services = Depends(get_services),
                          context: RequestContext = Depends(get_context)):
    resolved = await services.shares.metadata(share_token, x_share_password, context)
    return _public_response(resolved)


@router.get("/public/{share_token}/download")
@public_share_limit
async def public_download(request: Request, share_token: str,
                          x_share_password: Optional[str] = Header(None),
                          services: Services = Depends(get_services),
                          context: RequestContext = Depends(get_context)):
    resolved, stream = await services.shares.download(share_token, x_share_password, context)
    return StreamingResponse(
        stream,
        media_type="application/octet-stream",
        headers={
            "Content-Length": str(stream.size),
            "Content-Disposition": f'attachment; filename="{resolved.file_id}.enc"',
        },
    )


# --- Owner management ---

@router.post("", response_model=ShareResponse, status_code=status.HTTP_201_CREATED)
async def create_share(body: ShareCreate,
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services),
                       context: RequestContext = Depends(get_context)):
    return await services.shares.create(current_user.id, body, context)


@router.get("", response_model=ShareListResponse)
async def list_shares(file_id: Optional[str] = Query(None),
                      active: Optional[bool] = Query(None),
                      limit: int = Query(50, ge=1, le=200),
                      offset: int = Query(0, ge=0),
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services)):
    items, total = await services.shares.list(current_user.id, file_id, active, limit, offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/files/{file_id}/stats", response_model=ShareFileStats)
async def share_stats(file_id: str,
                      current_user: User = Depends(get_current_user),
                      services: Services = Depends(get_services)):
    stats = await services.shares.file_stats(file_id, current_user.id)
    return ShareFileStats(file_id=stats.file_id, total_shares=stats.total_shares,
                          active_shares=stats.active_shares, total_downloads=stats.total_downloads)


@router.get("/{share_id}", response_model=ShareResponse)
async def get_share(share_id: str,
                    current_user: User = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    return await services.shares.get(share_id, current_user.id)


@router.patch("/{share_id}", response_model=ShareResponse)
async def update_share(share_id: str, body: ShareUpdate,
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services),
                       context: RequestContext = Depends(get_context)):
    return await services.shares.update(share_id, current_user.id, body, context)


@router.post("/{share_id}/revoke", response_model=ShareResponse)
async def revoke_share(share_id: str,
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services),
                       context: RequestContext = Depends(get_context)):
    return await services.shares.revoke(share_id, current_user.id, context)


@router.delete("/{share_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_share(share_id: str,
                       current_user: User = Depends(get_current_user),
                       services: Services = Depends(get_services),
                       context: RequestContext = Depends(get_context)):
    await services.shares.delete(share_id, current_user.id, context)
