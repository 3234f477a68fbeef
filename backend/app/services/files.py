# backend/app/services/files.py
"""
File lifecycle: Active -> SoftDeleted -> (Active | gone), or Active -> gone.

Every change to a file's footprint goes through services/ledger.py inside
the transaction that makes the change. Blob IO never happens inside a
transaction: uploads run before the row insert (and are removed again when
the insert fails), deletes run after the row removal has committed.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError

from backend.app.core.cache import Cache, share_key
from backend.app.core.clock import utcnow
from backend.app.core.config import Settings
from backend.app.core.exceptions import AppError, ConflictError, NotFoundError, StorageError, ValidationError
from backend.app.db.repository import Repository, UNSET
from backend.app.db.session import Database
from backend.app.models import File, FileVersion
from backend.app.models.user import new_id
from backend.app.schemas.file import FileCreate, FileUpdate, FileVersionCreate, FileListParams
from backend.app.services import ledger
from backend.app.services.audit import AuditService, AuditAction, ResourceType
from backend.app.services.context import RequestContext, ANONYMOUS
from backend.app.storage import blob_store
from backend.app.storage.blob_store import BlobStore, BlobStream, BlobData

logger = logging.getLogger(__name__)


@dataclass
class Purge:
    """Side effects owed once a deleting transaction has committed."""
    blob_paths: List[str] = field(default_factory=list)
    share_tokens: List[str] = field(default_factory=list)
    bytes_released: int = 0
    files: int = 0

    def merge(self, other: "Purge") -> None:
        self.blob_paths.extend(other.blob_paths)
        self.share_tokens.extend(other.share_tokens)
        self.bytes_released += other.bytes_released
        self.files += other.files


def _not_found(file_id: str, user_id: str) -> NotFoundError:
    # Missing, trashed and foreign files are indistinguishable to the caller
    return NotFoundError("File not found", reason=f"file {file_id} not visible to user {user_id}")


class FileService:
    def __init__(self, settings: Settings, database: Database, blobs: BlobStore,
                 cache: Cache, audit: AuditService):
        self.settings = settings
        self.database = database
        self.blobs = blobs
        self.cache = cache
        self.audit = audit

    # ─────────────────────────────────────────────────────────────
    # In-transaction building blocks (shared with the folder cascade)
    # ─────────────────────────────────────────────────────────────
    async def require_parent_folder(self, repo: Repository, user_id: str, folder_id: Optional[str]) -> None:
        if folder_id is None:
            return
        if await repo.get_folder(folder_id, user_id) is None:
            raise NotFoundError("Parent folder not found",
                                reason=f"folder {folder_id} not visible to user {user_id}")

    async def soft_delete_in(self, repo: Repository, file: File) -> Purge:
        if file.is_deleted:
            return Purge()
        file.is_deleted = True
        file.deleted_at = utcnow()
        await ledger.release(repo, file.user_id, file.encrypted_size)
        # Shares die with the file; only their cache entries need clearing
        tokens = await repo.list_share_tokens_for_file(file.id)
        return Purge(share_tokens=tokens, bytes_released=file.encrypted_size, files=1)

    async def restore_in(self, repo: Repository, file: File) -> None:
        """Raises PaymentRequiredError, before any write, when the file no longer fits."""
        if not file.is_deleted:
            return
        await ledger.charge(repo, file.user_id, file.encrypted_size)
        file.is_deleted = False
        file.deleted_at = None
        if file.parent_folder_id is not None and await repo.get_folder(file.parent_folder_id, file.user_id) is None:
            file.parent_folder_id = None

    async def permanent_delete_in(self, repo: Repository, file: File) -> Purge:
        versions = await repo.list_versions(file.id)
        tokens = await repo.list_share_tokens_for_file(file.id)

        # A trashed file was already released at soft-delete time
        released = 0 if file.is_deleted else file.encrypted_size
        if self.settings.CHARGE_VERSION_STORAGE:
            released += sum(version.file_size for version in versions)
        await ledger.release(repo, file.user_id, released)

        paths = [file.storage_path]
        if file.thumbnail_path:
            paths.append(file.thumbnail_path)
        paths.extend(version.storage_path for version in versions)

        await repo.delete_file(file)
        return Purge(blob_paths=paths, share_tokens=tokens, bytes_released=released, files=1)

    async def apply_purge(self, purge: Purge) -> None:
        """Run after commit. Blob failures are logged: the row is already gone."""
        for token in purge.share_tokens:
            await self.cache.delete(share_key(token))
        if purge.blob_paths:
            try:
                await self.blobs.delete_many(purge.blob_paths)
            except StorageError as e:
                logger.error(f"Orphaned blobs after delete: {e.details or e.message}")

    async def _discard_blobs(self, *paths: Optional[str]) -> None:
        for path in paths:
            if not path:
                continue
            try:
                await self.blobs.delete(path)
            except StorageError as e:
                logger.error(f"Failed to clean up blob {path} after aborted write: {e.message}")

    async def _get_owned(self, repo: Repository, file_id: str, user_id: str,
                         is_deleted: Optional[bool] = False) -> File:
        file = await repo.get_file(file_id, user_id, is_deleted=is_deleted)
        if file is None:
            logger.warning(f"File {file_id} not found for user {user_id}")
            raise _not_found(file_id, user_id)
        return file

    # ─────────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────────
    async def create(self, user_id: str, data: FileCreate, content: BlobData,
                     thumbnail: Optional[bytes] = None, context: RequestContext = ANONYMOUS) -> File:
        file_id = new_id()
        storage_path = blob_store.file_path(user_id, file_id)
        logger.info(f"Uploading file {file_id} for user {user_id} ({data.encrypted_size} bytes)")

        async with self.audit.track(AuditAction.FILE_UPLOAD, user_id, ResourceType.FILE, file_id, context):
            if data.encrypted_size <= 0:
                raise ValidationError("encrypted_size must be greater than 0")

            # Fail fast, before uploading anything
            async with self.database.transaction() as repo:
                await self.require_parent_folder(repo, user_id, data.parent_folder_id)
                await ledger.ensure_available(repo, user_id, data.encrypted_size)

            await self.blobs.put(storage_path, content, data.encrypted_size,
                                 {"user_id": user_id, "file_id": file_id, "file_hash": data.file_hash})
            thumb_path = await self._store_thumbnail(user_id, file_id, thumbnail)

            try:
                async with self.database.transaction() as repo:
                    await self.require_parent_folder(repo, user_id, data.parent_folder_id)
                    await ledger.charge(repo, user_id, data.encrypted_size)
                    file = File(
                        id=file_id,
                        user_id=user_id,
                        parent_folder_id=data.parent_folder_id,
                        filename_encrypted=data.filename_encrypted,
                        filename_iv=data.filename_iv,
                        file_key_encrypted=data.file_key_encrypted,
                        encryption_algorithm=data.encryption_algorithm,
                        file_size=data.file_size,
                        encrypted_size=data.encrypted_size,
                        mime_type=data.mime_type,
                        storage_path=storage_path,
                        thumbnail_path=thumb_path,
                        file_hash=data.file_hash,
                        version=1,
                    )
                    await repo.add(file)
            except Exception:
                await self._discard_blobs(storage_path, thumb_path)
                raise

        logger.info(f"File {file_id} uploaded")
        return file

    async def _store_thumbnail(self, user_id: str, file_id: str, thumbnail: Optional[bytes]) -> Optional[str]:
        if not thumbnail:
            return None
        path = blob_store.thumbnail_path(user_id, file_id)
        try:
            await self.blobs.put(path, thumbnail, len(thumbnail), {"user_id": user_id, "file_id": file_id})
        except AppError as e:
            logger.warning(f"Thumbnail upload failed for file {file_id}: {e.message}")
            return None
        return path

    # ─────────────────────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────────────────────
    async def get(self, file_id: str, user_id: str) -> File:
        async with self.database.transaction() as repo:
            return await self._get_owned(repo, file_id, user_id)

    async def list(self, user_id: str, parent_folder_id=UNSET,
                   params: Optional[FileListParams] = None) -> Tuple[Sequence[File], int]:
        params = params or FileListParams()
        async with self.database.transaction() as repo:
            if parent_folder_id not in (UNSET, None):
                await self.require_parent_folder(repo, user_id, parent_folder_id)
            return await repo.list_files(
                user_id,
                parent_folder_id=parent_folder_id,
                is_deleted=False,
                limit=params.limit,
                offset=params.offset,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
            )

    async def list_trash(self, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[Sequence[File], int]:
        async with self.database.transaction() as repo:
            return await repo.list_files(user_id, is_deleted=True, limit=limit, offset=offset,
                                         sort_by="updated_at", sort_order="desc")

    async def find_by_hash(self, user_id: str, file_hash: str) -> Optional[File]:
        # Scoped to the owner: no cross-tenant dedup
        async with self.database.transaction() as repo:
            return await repo.find_file_by_hash(user_id, file_hash)

    async def download(self, file_id: str, user_id: str,
                       context: RequestContext = ANONYMOUS) -> Tuple[File, BlobStream]:
        async with self.audit.track(AuditAction.FILE_DOWNLOAD, user_id, ResourceType.FILE, file_id, context):
            async with self.database.transaction() as repo:
                file = await self._get_owned(repo, file_id, user_id)
            stream = await self.blobs.get(file.storage_path)
        return file, stream

    async def download_thumbnail(self, file_id: str, user_id: str) -> BlobStream:
        async with self.database.transaction() as repo:
            file = await self._get_owned(repo, file_id, user_id)
        if not file.thumbnail_path:
            raise NotFoundError("Thumbnail not found")
        return await self.blobs.get(file.thumbnail_path)

    # ─────────────────────────────────────────────────────────────
    # Update / move
    # ─────────────────────────────────────────────────────────────
    async def update(self, file_id: str, user_id: str, data: FileUpdate,
                     context: RequestContext = ANONYMOUS) -> File:
        fields = data.model_fields_set
        renaming = bool({"filename_encrypted", "filename_iv"} & fields)
        moving = "parent_folder_id" in fields
        if not renaming and not moving:
            raise ValidationError("No changes supplied")
        if renaming and not (data.filename_encrypted and data.filename_iv):
            raise ValidationError("filename_encrypted and filename_iv must be updated together")

        if renaming and moving:
            action = AuditAction.FILE_UPDATE
        else:
            action = AuditAction.FILE_RENAME if renaming else AuditAction.FILE_MOVE

        async with self.audit.track(action, user_id, ResourceType.FILE, file_id, context):
            async with self.database.transaction() as repo:
                file = await self._get_owned(repo, file_id, user_id)
                if moving:
                    await self.require_parent_folder(repo, user_id, data.parent_folder_id)
                    file.parent_folder_id = data.parent_folder_id
                if renaming:
                    file.filename_encrypted = data.filename_encrypted
                    file.filename_iv = data.filename_iv
                file.updated_at = utcnow()
        return file

    async def move_files(self, file_ids: List[str], user_id: str, target_folder_id: Optional[str],
                         context: RequestContext = ANONYMOUS) -> int:
        unique_ids = list(dict.fromkeys(file_ids))
        async with self.audit.track(AuditAction.FILE_MOVE, user_id, ResourceType.FILE, target_folder_id, context):
            async with self.database.transaction() as repo:
                await self.require_parent_folder(repo, user_id, target_folder_id)
                moved = await repo.move_files(unique_ids, user_id, target_folder_id)
        logger.info(f"Moved {moved} of {len(unique_ids)} files for user {user_id}")
        return moved

    # ─────────────────────────────────────────────────────────────
    # Delete / restore
    # ─────────────────────────────────────────────────────────────
    async def soft_delete(self, file_id: str, user_id: str, context: RequestContext = ANONYMOUS) -> None:
        async with self.audit.track(AuditAction.FILE_DELETE, user_id, ResourceType.FILE, file_id, context):
            async with self.database.transaction() as repo:
                file = await self._get_owned(repo, file_id, user_id)
                purge = await self.soft_delete_in(repo, file)
            await self.apply_purge(purge)
        logger.info(f"File {file_id} moved to trash")

    async def restore(self, file_id: str, user_id: str, context: RequestContext = ANONYMOUS) -> File:
        async with self.audit.track(AuditAction.FILE_RESTORE, user_id, ResourceType.FILE, file_id, context):
            async with self.database.transaction() as repo:
                file = await self._get_owned(repo, file_id, user_id, is_deleted=True)
                await self.restore_in(repo, file)
        logger.info(f"File {file_id} restored")
        return file

    async def permanent_delete(self, file_id: str, user_id: str, context: RequestContext = ANONYMOUS) -> int:
        """Works on active and trashed files. Returns the bytes released from the ledger."""
        async with self.audit.track(AuditAction.FILE_DELETE, user_id, ResourceType.FILE, file_id, context):
            async with self.database.transaction() as repo:
                file = await self._get_owned(repo, file_id, user_id, is_deleted=None)
                purge = await self.permanent_delete_in(repo, file)
            await self.apply_purge(purge)
        logger.info(f"File {file_id} permanently deleted")
        return purge.bytes_released

    async def delete(self, file_id: str, user_id: str, permanent: bool = False,
                     context: RequestContext = ANONYMOUS) -> None:
        if permanent:
            await self.permanent_delete(file_id, user_id, context)
        else:
            await self.soft_delete(file_id, user_id, context)

    # ─────────────────────────────────────────────────────────────
    # Versions
    # ─────────────────────────────────────────────────────────────
    async def create_version(self, file_id: str, user_id: str, data: FileVersionCreate, content: BlobData,
                             context: RequestContext = ANONYMOUS) -> FileVersion:
        charge_versions = self.settings.CHARGE_VERSION_STORAGE

        async with self.audit.track(AuditAction.FILE_VERSION_CREATE, user_id, ResourceType.FILE, file_id, context):
            async with self.database.transaction() as repo:
                file = await self._get_owned(repo, file_id, user_id)
                version_number = file.version + 1
                if charge_versions:
                    await ledger.ensure_available(repo, user_id, data.file_size)

            version_id = new_id()
            path = blob_store.version_path(user_id, file_id, version_id)
            await self.blobs.put(path, content, data.file_size,
                                 {"user_id": user_id, "file_id": file_id, "version": str(version_number)})

            try:
                async with self.database.transaction() as repo:
                    file = await self._get_owned(repo, file_id, user_id)
                    if file.version + 1 != version_number:
                        raise ConflictError("File was modified concurrently, retry the version upload")
                    if charge_versions:
                        await ledger.charge(repo, user_id, data.file_size)
                    version = FileVersion(
                        id=version_id,
                        file_id=file_id,
                        version_number=version_number,
                        storage_path=path,
                        file_size=data.file_size,
                        file_key_encrypted=data.file_key_encrypted,
                    )
                    await repo.add(version)
                    file.version = version_number
                    file.updated_at = utcnow()
            except IntegrityError:
                await self._discard_blobs(path)
                raise ConflictError("File was modified concurrently, retry the version upload")
            except Exception:
                await self._discard_blobs(path)
                raise

        logger.info(f"Created version {version_number} of file {file_id}")
        return version

    async def list_versions(self, file_id: str, user_id: str) -> Sequence[FileVersion]:
        async with self.database.transaction() as repo:
            await self._get_owned(repo, file_id, user_id)
            return await repo.list_versions(file_id)

    async def download_version(self, file_id: str, version_number: int,
                               user_id: str) -> Tuple[FileVersion, BlobStream]:
        versions = await self.list_versions(file_id, user_id)
        for version in versions:
            if version.version_number == version_number:
                return version, await self.blobs.get(version.storage_path)
        raise NotFoundError("Version not found")
