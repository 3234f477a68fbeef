# backend/app/db/repository.py
"""
Typed query surface over the relational store.

A Repository is bound to one AsyncSession inside one transaction (see
Database.transaction). Services only talk to the store through these
methods, so the storage engine stays swappable.
"""
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, delete, func, or_, case, asc, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models import User, Folder, File, FileVersion, Share, UserSession, AuditLog

FILE_SORT_COLUMNS = {
    "created_at": File.created_at,
    "updated_at": File.updated_at,
    "file_size": File.file_size,
}


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Distinguishes "no folder filter" from "root level" (None)
UNSET = _Unset()


class Repository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ─────────────────────────────────────────────────────────────
    # Generic
    # ─────────────────────────────────────────────────────────────
    async def add(self, obj) -> None:
        self.session.add(obj)
        await self.session.flush()

    async def refresh(self, obj) -> None:
        await self.session.refresh(obj)

    async def flush(self) -> None:
        await self.session.flush()

    # ─────────────────────────────────────────────────────────────
    # Users
    # ─────────────────────────────────────────────────────────────
    async def get_user(self, user_id: str, for_update: bool = False) -> Optional[User]:
        # populate_existing: storage_used is changed by bulk UPDATEs that bypass the identity map
        query = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        if for_update:
            # Row lock on PostgreSQL; SQLite serializes writers anyway
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        result = await self.session.execute(
            select(User).where(or_(User.email == identifier.lower(), User.username == identifier))
        )
        return result.scalars().first()

    async def find_user_conflict(self, email: str, username: str) -> Optional[User]:
        result = await self.session.execute(
            select(User).where(or_(User.email == email, User.username == username))
        )
        return result.scalars().first()

    async def adjust_storage_used(self, user_id: str, delta: int) -> bool:
        """
        Apply a signed delta to storage_used in a single statement.

        Positive deltas only apply while the result stays within quota;
        negative deltas floor at zero. Returns False when the guarded
        update matched no row.
        """
        if delta == 0:
            return True
        stmt = update(User).where(User.id == user_id)
        if delta > 0:
            stmt = stmt.where(User.storage_used + delta <= User.storage_quota).values(
                storage_used=User.storage_used + delta
            )
        else:
            stmt = stmt.values(
                storage_used=case(
                    (User.storage_used + delta < 0, 0),
                    else_=User.storage_used + delta,
                )
            )
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount == 1

    async def delete_user_cascade(self, user_id: str) -> None:
        """Remove every row owned by the user, children first."""
        file_ids = select(File.id).where(File.user_id == user_id)
        await self.session.execute(delete(Share).where(Share.owner_id == user_id))
        await self.session.execute(
            delete(Share).where(Share.file_id.in_(file_ids)).execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(FileVersion).where(FileVersion.file_id.in_(file_ids)).execution_options(synchronize_session=False)
        )
        await self.session.execute(delete(File).where(File.user_id == user_id))
        await self.session.execute(
            update(Folder).where(Folder.user_id == user_id).values(parent_folder_id=None)
        )
        await self.session.execute(delete(Folder).where(Folder.user_id == user_id))
        await self.session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        await self.session.execute(delete(User).where(User.id == user_id))

    # ─────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────
    async def get_session(self, session_id: str) -> Optional[UserSession]:
        result = await self.session.execute(select(UserSession).where(UserSession.id == session_id))
        return result.scalars().first()

    async def list_active_sessions(self, user_id: str, now: datetime) -> Sequence[UserSession]:
        result = await self.session.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.expires_at > now)
            .order_by(desc(UserSession.last_activity))
        )
        return result.scalars().all()

    async def touch_session(self, session_id: str, now: datetime) -> bool:
        """False when the row is gone."""
        result = await self.session.execute(
            update(UserSession)
            .where(UserSession.id == session_id)
            .values(last_activity=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def delete_session(self, session_id: str) -> bool:
        result = await self.session.execute(delete(UserSession).where(UserSession.id == session_id))
        return result.rowcount > 0

    async def delete_sessions_for_user(self, user_id: str) -> List[str]:
        result = await self.session.execute(
            select(UserSession.id).where(UserSession.user_id == user_id)
        )
        session_ids = list(result.scalars().all())
        await self.session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        return session_ids

    async def delete_expired_sessions(self, now: datetime) -> int:
        result = await self.session.execute(delete(UserSession).where(UserSession.expires_at <= now))
        return result.rowcount

    # ─────────────────────────────────────────────────────────────
    # Folders
    # ─────────────────────────────────────────────────────────────
    async def get_folder(self, folder_id: str, user_id: str,
                         is_deleted: Optional[bool] = False) -> Optional[Folder]:
        """is_deleted=None matches both active and trashed folders."""
        query = select(Folder).where(Folder.id == folder_id, Folder.user_id == user_id)
        if is_deleted is not None:
            query = query.where(Folder.is_deleted == is_deleted)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_active_parent_id(self, folder_id: str, user_id: str) -> Tuple[bool, Optional[str]]:
        """Returns (found, parent_folder_id) for one step of an upward walk."""
        result = await self.session.execute(
            select(Folder.parent_folder_id).where(
                Folder.id == folder_id,
                Folder.user_id == user_id,
                Folder.is_deleted == False,  # noqa: E712
            )
        )
        row = result.first()
        if row is None:
            return False, None
        return True, row[0]

    async def list_folders(self, user_id: str, parent_folder_id=UNSET, is_deleted: bool = False,
                           limit: int = 100, offset: int = 0) -> Tuple[Sequence[Folder], int]:
        conditions = [Folder.user_id == user_id, Folder.is_deleted == is_deleted]
        if parent_folder_id is not UNSET:
            conditions.append(Folder.parent_folder_id.is_(None) if parent_folder_id is None
                              else Folder.parent_folder_id == parent_folder_id)

        total = await self.session.scalar(select(func.count()).select_from(Folder).where(*conditions))
        result = await self.session.execute(
            select(Folder).where(*conditions).order_by(desc(Folder.created_at)).offset(offset).limit(limit)
        )
        return result.scalars().all(), total or 0

    async def list_all_active_folders(self, user_id: str) -> Sequence[Folder]:
        result = await self.session.execute(
            select(Folder)
            .where(Folder.user_id == user_id, Folder.is_deleted == False)  # noqa: E712
            .order_by(asc(Folder.created_at))
        )
        return result.scalars().all()

    async def list_child_folders(self, folder_id: Optional[str], user_id: str,
                                 is_deleted: Optional[bool] = False) -> Sequence[Folder]:
        query = select(Folder).where(Folder.user_id == user_id)
        query = query.where(Folder.parent_folder_id.is_(None) if folder_id is None
                            else Folder.parent_folder_id == folder_id)
        if is_deleted is not None:
            query = query.where(Folder.is_deleted == is_deleted)
        result = await self.session.execute(query.order_by(desc(Folder.created_at)))
        return result.scalars().all()

    async def count_active_children(self, folder_id: str, user_id: str) -> Tuple[int, int]:
        """(active files, active subfolders) directly under folder_id"""
        files = await self.session.scalar(
            select(func.count()).select_from(File).where(
                File.parent_folder_id == folder_id, File.user_id == user_id,
                File.is_deleted == False,  # noqa: E712
            )
        )
        folders = await self.session.scalar(
            select(func.count()).select_from(Folder).where(
                Folder.parent_folder_id == folder_id, Folder.user_id == user_id,
                Folder.is_deleted == False,  # noqa: E712
            )
        )
        return files or 0, folders or 0

    async def child_counts_by_folder(self, folder_ids: List[str], user_id: str) -> Dict[str, Tuple[int, int]]:
        """Active (files, subfolders) per folder in two grouped queries."""
        if not folder_ids:
            return {}
        counts = {folder_id: [0, 0] for folder_id in folder_ids}
        file_rows = await self.session.execute(
            select(File.parent_folder_id, func.count())
            .where(File.parent_folder_id.in_(folder_ids), File.user_id == user_id,
                   File.is_deleted == False)  # noqa: E712
            .group_by(File.parent_folder_id)
        )
        for parent_id, count in file_rows.all():
            counts[parent_id][0] = count
        folder_rows = await self.session.execute(
            select(Folder.parent_folder_id, func.count())
            .where(Folder.parent_folder_id.in_(folder_ids), Folder.user_id == user_id,
                   Folder.is_deleted == False)  # noqa: E712
            .group_by(Folder.parent_folder_id)
        )
        for parent_id, count in folder_rows.all():
            counts[parent_id][1] = count
        return {key: (value[0], value[1]) for key, value in counts.items()}

    async def delete_folder(self, folder: Folder) -> None:
        # Whatever still points here (already-trashed leftovers) moves to root
        await self.session.execute(
            update(File).where(File.parent_folder_id == folder.id).values(parent_folder_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(Folder).where(Folder.parent_folder_id == folder.id).values(parent_folder_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.delete(folder)
        await self.session.flush()

    # ─────────────────────────────────────────────────────────────
    # Files
    # ─────────────────────────────────────────────────────────────
    async def get_file(self, file_id: str, user_id: str, is_deleted: Optional[bool] = False) -> Optional[File]:
        """is_deleted=None matches both active and trashed files."""
        query = select(File).where(File.id == file_id, File.user_id == user_id)
        if is_deleted is not None:
            query = query.where(File.is_deleted == is_deleted)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_file_by_id(self, file_id: str) -> Optional[File]:
        result = await self.session.execute(select(File).where(File.id == file_id))
        return result.scalars().first()

    async def list_files(self, user_id: str, parent_folder_id=UNSET, is_deleted: bool = False,
                         limit: int = 100, offset: int = 0, sort_by: str = "created_at",
                         sort_order: str = "desc") -> Tuple[Sequence[File], int]:
        conditions = [File.user_id == user_id, File.is_deleted == is_deleted]
        if parent_folder_id is not UNSET:
            conditions.append(File.parent_folder_id.is_(None) if parent_folder_id is None
                              else File.parent_folder_id == parent_folder_id)

        column = FILE_SORT_COLUMNS.get(sort_by, File.created_at)
        ordering = asc(column) if sort_order == "asc" else desc(column)

        total = await self.session.scalar(select(func.count()).select_from(File).where(*conditions))
        result = await self.session.execute(
            select(File).where(*conditions).order_by(ordering, File.id).offset(offset).limit(limit)
        )
        return result.scalars().all(), total or 0

    async def list_files_in_folder(self, folder_id: Optional[str], user_id: str,
                                   is_deleted: Optional[bool] = False) -> Sequence[File]:
        query = select(File).where(File.user_id == user_id)
        query = query.where(File.parent_folder_id.is_(None) if folder_id is None
                            else File.parent_folder_id == folder_id)
        if is_deleted is not None:
            query = query.where(File.is_deleted == is_deleted)
        result = await self.session.execute(query.order_by(desc(File.created_at)))
        return result.scalars().all()

    async def find_file_by_hash(self, user_id: str, file_hash: str) -> Optional[File]:
        result = await self.session.execute(
            select(File).where(
                File.user_id == user_id, File.file_hash == file_hash,
                File.is_deleted == False,  # noqa: E712
            ).limit(1)
        )
        return result.scalars().first()

    async def count_files(self, user_id: str, is_deleted: bool) -> int:
        total = await self.session.scalar(
            select(func.count()).select_from(File).where(File.user_id == user_id, File.is_deleted == is_deleted)
        )
        return total or 0

    async def move_files(self, file_ids: List[str], user_id: str, target_folder_id: Optional[str]) -> int:
        result = await self.session.execute(
            update(File)
            .where(File.id.in_(file_ids), File.user_id == user_id, File.is_deleted == False)  # noqa: E712
            .values(parent_folder_id=target_folder_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_blob_paths_for_user(self, user_id: str) -> List[str]:
        files = await self.session.execute(
            select(File.storage_path, File.thumbnail_path).where(File.user_id == user_id)
        )
        paths: List[str] = []
        for storage_path, thumbnail_path in files.all():
            paths.append(storage_path)
            if thumbnail_path:
                paths.append(thumbnail_path)
        versions = await self.session.execute(
            select(FileVersion.storage_path)
            .join(File, File.id == FileVersion.file_id)
            .where(File.user_id == user_id)
        )
        paths.extend(versions.scalars().all())
        return paths

    async def delete_file(self, file: File) -> None:
        """Remove a file row with its versions and shares."""
        await self.session.execute(delete(Share).where(Share.file_id == file.id))
        await self.session.execute(delete(FileVersion).where(FileVersion.file_id == file.id))
        await self.session.delete(file)
        await self.session.flush()

    # ─────────────────────────────────────────────────────────────
    # File versions
    # ─────────────────────────────────────────────────────────────
    async def list_versions(self, file_id: str) -> Sequence[FileVersion]:
        result = await self.session.execute(
            select(FileVersion).where(FileVersion.file_id == file_id).order_by(desc(FileVersion.version_number))
        )
        return result.scalars().all()

    # ─────────────────────────────────────────────────────────────
    # Shares
    # ─────────────────────────────────────────────────────────────
    async def get_share_by_token(self, share_token: str) -> Optional[Share]:
        result = await self.session.execute(
            select(Share).where(Share.share_token == share_token).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_share(self, share_id: str, owner_id: str) -> Optional[Share]:
        result = await self.session.execute(
            select(Share).where(Share.id == share_id, Share.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_shares(self, owner_id: str, file_id: Optional[str] = None, is_active: Optional[bool] = None,
                          limit: int = 100, offset: int = 0) -> Tuple[Sequence[Share], int]:
        conditions = [Share.owner_id == owner_id]
        if file_id is not None:
            conditions.append(Share.file_id == file_id)
        if is_active is not None:
            conditions.append(Share.is_active == is_active)

        total = await self.session.scalar(select(func.count()).select_from(Share).where(*conditions))
        result = await self.session.execute(
            select(Share).where(*conditions).order_by(desc(Share.created_at)).offset(offset).limit(limit)
        )
        return result.scalars().all(), total or 0

    async def list_share_tokens_for_file(self, file_id: str) -> List[str]:
        result = await self.session.execute(select(Share.share_token).where(Share.file_id == file_id))
        return list(result.scalars().all())

    async def list_share_tokens_for_owner(self, owner_id: str) -> List[str]:
        result = await self.session.execute(select(Share.share_token).where(Share.owner_id == owner_id))
        return list(result.scalars().all())

    async def deactivate_share(self, share_id: str) -> None:
        await self.session.execute(
            update(Share).where(Share.id == share_id).values(is_active=False)
            .execution_options(synchronize_session=False)
        )

    async def touch_share(self, share_id: str, now: datetime) -> None:
        await self.session.execute(
            update(Share).where(Share.id == share_id).values(last_accessed=now)
            .execution_options(synchronize_session=False)
        )

    async def consume_share_download(self, share_id: str, now: datetime) -> bool:
        """
        Increment download_count if the share is still active and under its
        limit. The guard lives in the UPDATE itself so concurrent downloads
        can never push the counter past max_downloads.
        """
        result = await self.session.execute(
            update(Share)
            .where(
                Share.id == share_id,
                Share.is_active == True,  # noqa: E712
                or_(Share.max_downloads.is_(None), Share.download_count < Share.max_downloads),
            )
            .values(download_count=Share.download_count + 1, last_accessed=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_share(self, share: Share) -> None:
        await self.session.delete(share)
        await self.session.flush()

    async def delete_expired_shares(self, now: datetime) -> List[str]:
        result = await self.session.execute(
            select(Share.share_token).where(Share.expires_at.is_not(None), Share.expires_at < now)
        )
        tokens = list(result.scalars().all())
        if tokens:
            await self.session.execute(delete(Share).where(Share.share_token.in_(tokens)))
        return tokens

    # ─────────────────────────────────────────────────────────────
    # Audit log
    # ─────────────────────────────────────────────────────────────
    async def list_audit_logs(self, user_id: Optional[str] = None, action: Optional[str] = None,
                              resource_type: Optional[str] = None, resource_id: Optional[str] = None,
                              limit: int = 100, offset: int = 0) -> Tuple[Sequence[AuditLog], int]:
        conditions = []
        if user_id is not None:
            conditions.append(AuditLog.user_id == user_id)
        if action is not None:
            conditions.append(AuditLog.action == action)
        if resource_type is not None:
            conditions.append(AuditLog.resource_type == resource_type)
        if resource_id is not None:
            conditions.append(AuditLog.resource_id == resource_id)

        total = await self.session.scalar(select(func.count()).select_from(AuditLog).where(*conditions))
        result = await self.session.execute(
            select(AuditLog).where(*conditions)
            .order_by(desc(AuditLog.created_at), desc(AuditLog.id)).offset(offset).limit(limit)
        )
        return result.scalars().all(), total or 0

    async def count_audit_failures(self, action: str, since: datetime, ip_address: Optional[str] = None) -> int:
        conditions = [AuditLog.action == action, AuditLog.success == False,  # noqa: E712
                      AuditLog.created_at >= since]
        if ip_address is not None:
            conditions.append(AuditLog.ip_address == ip_address)
        total = await self.session.scalar(select(func.count()).select_from(AuditLog).where(*conditions))
        return total or 0

    async def audit_counts_by_action(self, user_id: str, since: datetime) -> Dict[str, int]:
        result = await self.session.execute(
            select(AuditLog.action, func.count())
            .where(AuditLog.user_id == user_id, AuditLog.created_at >= since)
            .group_by(AuditLog.action)
        )
        return {action: count for action, count in result.all()}

    async def last_audit_event(self, user_id: str, action: str) -> Optional[AuditLog]:
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id, AuditLog.action == action, AuditLog.success == True)  # noqa: E712
            .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
            .limit(1)
        )
        return result.scalars().first()

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
        return result.rowcount
