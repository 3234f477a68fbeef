# backend/app/api/v1/endpoints/users.py
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from backend.app.api.rate_limit import sensitive_limit
from backend.app.api.deps import get_services, get_context, get_current_user
from backend.app.models.user import User
from backend.app.schemas.user import (
    UserResponse, StorageStats, ActivitySummary, AuditLogListResponse, AccountDeleteRequest,
)
from backend.app.services import Services
from backend.app.services.context import RequestContext

router = APIRouter()


@router.get("/me", response_model=UserResponse)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.get("/me/storage", response_model=StorageStats)
async def storage(current_user: User = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    stats = await services.users.storage_stats(current_user.id)
    return StorageStats(**asdict(stats))


@router.get("/me/activity", response_model=ActivitySummary)
async def activity(days: int = Query(30, ge=1, le=365),
                   current_user: User = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    summary = await services.users.activity_summary(current_user.id, days)
    return ActivitySummary(**asdict(summary))


@router.get("/me/audit-logs", response_model=AuditLogListResponse)
async def audit_logs(limit: int = Query(50, ge=1, le=200),
                     offset: int = Query(0, ge=0),
                     action: Optional[str] = Query(None),
                     current_user: User = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    items, total = await services.audit.list_for_user(current_user.id, action=action, limit=limit, offset=offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
@sensitive_limit
async def delete_me(request: Request, body: AccountDeleteRequest,
                    current_user: User = Depends(get_current_user),
                    services: Services = Depends(get_services),
                    context: RequestContext = Depends(get_context)):
    await services.users.delete_account(current_user.id, body.password, context)
