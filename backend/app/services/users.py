# backend/app/services/users.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from backend.app.core.cache import Cache, session_key, share_key
from backend.app.core.clock import utcnow, as_utc
from backend.app.core.exceptions import AuthError, NotFoundError, StorageError
from backend.app.db.session import Database
from backend.app.models import User
from backend.app.services.audit import AuditService, AuditAction, ResourceType
from backend.app.services.auth import verify_password
from backend.app.services.context import RequestContext, ANONYMOUS
from backend.app.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class StorageStats:
    storage_quota: int
    storage_used: int
    storage_available: int
    usage_percentage: float
    file_count: int
    trashed_file_count: int


@dataclass
class ActivitySummary:
    days: int
    total_events: int
    actions: Dict[str, int]
    last_login: Optional[datetime]


class UserService:
    def __init__(self, database: Database, blobs: BlobStore, cache: Cache, audit: AuditService):
        self.database = database
        self.blobs = blobs
        self.cache = cache
        self.audit = audit

    async def get(self, user_id: str) -> User:
        async with self.database.transaction() as repo:
            user = await repo.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", reason=f"user {user_id} missing")
        return user

    async def storage_stats(self, user_id: str) -> StorageStats:
        async with self.database.transaction() as repo:
            user = await repo.get_user(user_id)
            if user is None:
                raise NotFoundError("User not found")
            active = await repo.count_files(user_id, is_deleted=False)
            trashed = await repo.count_files(user_id, is_deleted=True)

        quota = user.storage_quota
        used = user.storage_used
        return StorageStats(
            storage_quota=quota,
            storage_used=used,
            storage_available=max(quota - used, 0),
            usage_percentage=round(used / quota * 100, 2) if quota else 0.0,
            file_count=active,
            trashed_file_count=trashed,
        )

    async def activity_summary(self, user_id: str, days: int = 30) -> ActivitySummary:
        since = utcnow() - timedelta(days=days)
        async with self.database.transaction() as repo:
            actions = await repo.audit_counts_by_action(user_id, since)
            last_login = await repo.last_audit_event(user_id, AuditAction.USER_LOGIN.value)
        return ActivitySummary(
            days=days,
            total_events=sum(actions.values()),
            actions=actions,
            last_login=as_utc(last_login.created_at) if last_login else None,
        )

    async def delete_account(self, user_id: str, password: str, context: RequestContext = ANONYMOUS) -> None:
        """
        Removes the user and everything they own in one transaction, then
        clears cache entries and blobs. Blob failures are logged only.
        """
        async with self.audit.track(AuditAction.ACCOUNT_DELETE, user_id, ResourceType.USER, user_id, context):
            user = await self.get(user_id)
            if not await verify_password(password, user.password_hash):
                raise AuthError("Password is incorrect")

            async with self.database.transaction() as repo:
                blob_paths = await repo.list_blob_paths_for_user(user_id)
                share_tokens = await repo.list_share_tokens_for_owner(user_id)
                session_ids = await repo.delete_sessions_for_user(user_id)
                await repo.delete_user_cascade(user_id)

            for session_id in session_ids:
                await self.cache.delete(session_key(session_id))
            for token in share_tokens:
                await self.cache.delete(share_key(token))
            try:
                await self.blobs.delete_many(blob_paths)
            except StorageError as e:
                logger.error(f"Orphaned blobs after deleting account {user_id}: {e.details or e.message}")

        logger.info(f"Account {user_id} deleted ({len(blob_paths)} blobs)")
