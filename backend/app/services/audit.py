# backend/app/services/audit.py
"""
Audit sink.

Every state-changing operation records one event, success or failure.
Records are written in their own short transaction after the operation's
transaction has finished, and a failure to write is logged and dropped:
auditing never changes the outcome the caller sees.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import AsyncIterator, Optional, Sequence, Tuple

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import AppError
from backend.app.db.session import Database
from backend.app.models import AuditLog
from backend.app.services.context import RequestContext, ANONYMOUS

logger = logging.getLogger(__name__)

# Stored in place of messages from unexpected exceptions, which may carry internals
UNEXPECTED_ERROR = "Unexpected error"


class AuditAction(str, Enum):
    USER_REGISTER = "user.register"
    USER_LOGIN = "user.login"
    USER_LOGIN_FAILED = "user.login_failed"
    USER_LOGOUT = "user.logout"
    PASSWORD_CHANGE = "user.password_change"
    TOTP_ENABLE = "user.totp_enable"
    TOTP_DISABLE = "user.totp_disable"
    SESSION_VALIDATE_FAILED = "session.validate_failed"

    FILE_UPLOAD = "file.upload"
    FILE_DOWNLOAD = "file.download"
    FILE_DELETE = "file.delete"
    FILE_UPDATE = "file.update"
    FILE_MOVE = "file.move"
    FILE_RENAME = "file.rename"
    FILE_RESTORE = "file.restore"
    FILE_VERSION_CREATE = "file.version_create"

    FOLDER_CREATE = "folder.create"
    FOLDER_DELETE = "folder.delete"
    FOLDER_UPDATE = "folder.update"
    FOLDER_MOVE = "folder.move"
    FOLDER_RENAME = "folder.rename"
    FOLDER_RESTORE = "folder.restore"

    SHARE_CREATE = "share.create"
    SHARE_UPDATE = "share.update"
    SHARE_DELETE = "share.delete"
    SHARE_ACCESS = "share.access"
    SHARE_DOWNLOAD = "share.download"
    SHARE_ACCESS_DENIED = "share.access_denied"

    ACCOUNT_DELETE = "account.delete"


class ResourceType(str, Enum):
    USER = "user"
    FILE = "file"
    FOLDER = "folder"
    SHARE = "share"
    SESSION = "session"


@dataclass
class AuditEvent:
    """Mutable handle yielded by AuditService.track so the body can fill in ids."""
    action: AuditAction
    user_id: Optional[str]
    resource_type: Optional[ResourceType]
    resource_id: Optional[str] = None


class AuditService:
    def __init__(self, database: Database):
        self.database = database

    async def record(
        self,
        action: AuditAction,
        user_id: Optional[str] = None,
        resource_type: Optional[ResourceType] = None,
        resource_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        context = context or ANONYMOUS
        try:
            async with self.database.transaction() as repo:
                await repo.add(AuditLog(
                    user_id=user_id,
                    action=action.value,
                    resource_type=resource_type.value if resource_type else None,
                    resource_id=resource_id,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    success=success,
                    error_message=error_message,
                ))
        except Exception as e:
            logger.error(f"Failed to write audit record {action.value} for user {user_id}: {e}")

    @asynccontextmanager
    async def track(
        self,
        action: AuditAction,
        user_id: Optional[str],
        resource_type: Optional[ResourceType] = None,
        resource_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> AsyncIterator[AuditEvent]:
        """
        Record the outcome of the wrapped block.

        Must wrap the whole database transaction, never sit inside it: the
        record is written once the block has committed or rolled back.
        """
        event = AuditEvent(action, user_id, resource_type, resource_id)
        try:
            yield event
        except AppError as e:
            await self.record(event.action, event.user_id, event.resource_type, event.resource_id,
                              context, success=False, error_message=e.message)
            raise
        except Exception:
            await self.record(event.action, event.user_id, event.resource_type, event.resource_id,
                              context, success=False, error_message=UNEXPECTED_ERROR)
            raise
        await self.record(event.action, event.user_id, event.resource_type, event.resource_id, context)

    # ─────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────
    async def list_for_user(self, user_id: str, action: Optional[str] = None,
                            limit: int = 50, offset: int = 0) -> Tuple[Sequence[AuditLog], int]:
        async with self.database.transaction() as repo:
            return await repo.list_audit_logs(user_id=user_id, action=action, limit=limit, offset=offset)

    async def list_for_resource(self, resource_type: ResourceType, resource_id: str,
                                limit: int = 50, offset: int = 0) -> Tuple[Sequence[AuditLog], int]:
        async with self.database.transaction() as repo:
            return await repo.list_audit_logs(resource_type=resource_type.value, resource_id=resource_id,
                                              limit=limit, offset=offset)

    async def count_recent_failures(self, action: AuditAction, minutes: int = 15,
                                    ip_address: Optional[str] = None) -> int:
        since = utcnow() - timedelta(minutes=minutes)
        async with self.database.transaction() as repo:
            return await repo.count_audit_failures(action.value, since, ip_address)

    async def cleanup(self, retention_days: int) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self.database.transaction() as repo:
            removed = await repo.delete_audit_logs_before(cutoff)
        logger.info(f"Removed {removed} audit records older than {retention_days} days")
        return removed
