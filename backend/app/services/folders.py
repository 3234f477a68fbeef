# backend/app/services/folders.py
"""
Folder hierarchy.

Folders reference their parent by id only. Every walk over the hierarchy
(cycle check, breadcrumbs, cascades) is iterative, keeps a visited set and
stops after MAX_FOLDER_DEPTH steps, so corrupted parent pointers can never
make a request loop forever.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from backend.app.core.clock import utcnow
from backend.app.core.config import Settings
from backend.app.core.exceptions import NotFoundError, PaymentRequiredError, ValidationError
from backend.app.db.repository import Repository, UNSET
from backend.app.db.session import Database
from backend.app.models import File, Folder
from backend.app.schemas.folder import FolderCreate, FolderUpdate
from backend.app.services.audit import AuditService, AuditAction, ResourceType
from backend.app.services.context import RequestContext, ANONYMOUS
from backend.app.services.files import FileService, Purge

logger = logging.getLogger(__name__)

CIRCULAR_REFERENCE = "Moving folder would create a circular reference"
DEFAULT_TREE_DEPTH = 10


@dataclass
class FolderContents:
    folder: Optional[Folder]
    breadcrumbs: List[Folder]
    folders: Sequence[Folder]
    files: Sequence[File]
    counts: Dict[str, Tuple[int, int]]


@dataclass
class DeleteSummary:
    folders: int
    files: int
    bytes_released: int
    permanent: bool


@dataclass
class RestoreSummary:
    folder: Folder
    restored_folders: int = 0
    restored_files: int = 0
    skipped_file_ids: List[str] = field(default_factory=list)


def _not_found(folder_id: str, user_id: str) -> NotFoundError:
    return NotFoundError("Folder not found", reason=f"folder {folder_id} not visible to user {user_id}")


class FolderService:
    def __init__(self, settings: Settings, database: Database, files: FileService, audit: AuditService):
        self.settings = settings
        self.database = database
        self.files = files
        self.audit = audit
        self.max_depth = settings.MAX_FOLDER_DEPTH

    async def _get_owned(self, repo: Repository, folder_id: str, user_id: str,
                         is_deleted: Optional[bool] = False) -> Folder:
        folder = await repo.get_folder(folder_id, user_id, is_deleted=is_deleted)
        if folder is None:
            logger.warning(f"Folder {folder_id} not found for user {user_id}")
            raise _not_found(folder_id, user_id)
        return folder

    async def _require_parent(self, repo: Repository, user_id: str, parent_id: Optional[str]) -> None:
        if parent_id is None:
            return
        if await repo.get_folder(parent_id, user_id) is None:
            raise NotFoundError("Parent folder not found", reason=f"folder {parent_id} not visible to user {user_id}")

    async def _assert_no_cycle(self, repo: Repository, user_id: str, folder_id: str,
                               new_parent_id: Optional[str]) -> None:
        """
        Walk up from new_parent_id. Meeting folder_id means the move would put
        the folder under itself. Running out of steps or revisiting a node
        means the stored chain is already broken; refuse rather than guess.
        """
        visited = set()
        current = new_parent_id
        steps = 0
        while current is not None:
            if current == folder_id:
                raise ValidationError(CIRCULAR_REFERENCE)
            if current in visited or steps >= self.max_depth:
                logger.error(f"Folder chain above {new_parent_id} for user {user_id} is corrupt or too deep")
                raise ValidationError(CIRCULAR_REFERENCE)
            visited.add(current)
            found, parent_id = await repo.get_active_parent_id(current, user_id)
            if not found:
                break
            current = parent_id
            steps += 1

    async def _breadcrumbs(self, repo: Repository, folder: Folder) -> List[Folder]:
        trail = [folder]
        visited = {folder.id}
        current = folder.parent_folder_id
        while current is not None and len(trail) < self.max_depth:
            if current in visited:
                logger.error(f"Cycle in folder chain at {current}")
                break
            visited.add(current)
            parent = await repo.get_folder(current, folder.user_id)
            if parent is None:
                break
            trail.append(parent)
            current = parent.parent_folder_id
        trail.reverse()
        return trail

    async def _descendants(self, repo: Repository, root: Folder, is_deleted: Optional[bool]) -> List[Folder]:
        """Pre-order list of root and its descendants, depth-first and bounded."""
        ordered: List[Folder] = []
        visited = set()
        stack = [(root, 0)]
        while stack:
            folder, depth = stack.pop()
            if folder.id in visited:
                continue
            if depth > self.max_depth:
                raise ValidationError("Folder hierarchy exceeds maximum depth")
            visited.add(folder.id)
            ordered.append(folder)
            for child in await repo.list_child_folders(folder.id, folder.user_id, is_deleted=is_deleted):
                stack.append((child, depth + 1))
        return ordered

    # ─────────────────────────────────────────────────────────────
    # Create / read
    # ─────────────────────────────────────────────────────────────
    async def create(self, user_id: str, data: FolderCreate, context: RequestContext = ANONYMOUS) -> Folder:
        async with self.audit.track(AuditAction.FOLDER_CREATE, user_id, ResourceType.FOLDER,
                                    context=context) as event:
            async with self.database.transaction() as repo:
                await self._require_parent(repo, user_id, data.parent_folder_id)
                folder = Folder(
                    user_id=user_id,
                    parent_folder_id=data.parent_folder_id,
                    name_encrypted=data.name_encrypted,
                    name_iv=data.name_iv,
                )
                await repo.add(folder)
            event.resource_id = folder.id
        logger.info(f"Folder {folder.id} created for user {user_id}")
        return folder

    async def get(self, folder_id: str, user_id: str) -> Folder:
        async with self.database.transaction() as repo:
            return await self._get_owned(repo, folder_id, user_id)

    async def list(self, user_id: str, parent_folder_id=UNSET, is_deleted: bool = False,
                   limit: int = 100, offset: int = 0) -> Tuple[Sequence[Folder], int, Dict[str, Tuple[int, int]]]:
        async with self.database.transaction() as repo:
            if parent_folder_id not in (UNSET, None):
                await self._get_owned(repo, parent_folder_id, user_id)
            folders, total = await repo.list_folders(user_id, parent_folder_id=parent_folder_id,
                                                     is_deleted=is_deleted, limit=limit, offset=offset)
            counts = await repo.child_counts_by_folder([f.id for f in folders], user_id)
        return folders, total, counts

    async def get_with_contents(self, folder_id: Optional[str], user_id: str) -> FolderContents:
        """Subfolders, files and breadcrumbs of one folder, or of the root when folder_id is None."""
        async with self.database.transaction() as repo:
            folder = None
            breadcrumbs: List[Folder] = []
            if folder_id is not None:
                folder = await self._get_owned(repo, folder_id, user_id)
                breadcrumbs = await self._breadcrumbs(repo, folder)
            folders = await repo.list_child_folders(folder_id, user_id)
            files = await repo.list_files_in_folder(folder_id, user_id)
            ids = [f.id for f in folders] + ([folder.id] if folder else [])
            counts = await repo.child_counts_by_folder(ids, user_id)
        return FolderContents(folder, breadcrumbs, folders, files, counts)

    async def breadcrumbs(self, folder_id: str, user_id: str) -> List[Folder]:
        async with self.database.transaction() as repo:
            folder = await self._get_owned(repo, folder_id, user_id)
            return await self._breadcrumbs(repo, folder)

    async def tree(self, user_id: str, max_depth: int = DEFAULT_TREE_DEPTH) -> List[dict]:
        """Nested structure built from a single query."""
        max_depth = max(1, min(max_depth, self.max_depth))
        async with self.database.transaction() as repo:
            folders = await repo.list_all_active_folders(user_id)

        ids = {f.id for f in folders}
        children: Dict[Optional[str], List[Folder]] = defaultdict(list)
        for folder in folders:
            # Parent gone or trashed: show it at the top level
            parent = folder.parent_folder_id if folder.parent_folder_id in ids else None
            children[parent].append(folder)

        def node(folder: Folder) -> dict:
            return {
                "id": folder.id,
                "parent_folder_id": folder.parent_folder_id,
                "name_encrypted": folder.name_encrypted,
                "name_iv": folder.name_iv,
                "children": [],
            }

        roots = [node(f) for f in children[None]]
        visited = set()
        stack = [(n, 1) for n in roots]
        while stack:
            current, depth = stack.pop()
            if current["id"] in visited:
                continue
            visited.add(current["id"])
            if depth >= max_depth:
                continue
            for child in children.get(current["id"], []):
                child_node = node(child)
                current["children"].append(child_node)
                stack.append((child_node, depth + 1))
        return roots

    # ─────────────────────────────────────────────────────────────
    # Update
    # ─────────────────────────────────────────────────────────────
    async def update(self, folder_id: str, user_id: str, data: FolderUpdate,
                     context: RequestContext = ANONYMOUS) -> Folder:
        fields = data.model_fields_set
        renaming = bool({"name_encrypted", "name_iv"} & fields)
        moving = "parent_folder_id" in fields
        if not renaming and not moving:
            raise ValidationError("No changes supplied")
        if renaming and not (data.name_encrypted and data.name_iv):
            raise ValidationError("name_encrypted and name_iv must be updated together")

        if renaming and moving:
            action = AuditAction.FOLDER_UPDATE
        else:
            action = AuditAction.FOLDER_RENAME if renaming else AuditAction.FOLDER_MOVE

        async with self.audit.track(action, user_id, ResourceType.FOLDER, folder_id, context):
            async with self.database.transaction() as repo:
                folder = await self._get_owned(repo, folder_id, user_id)
                if moving:
                    await self._require_parent(repo, user_id, data.parent_folder_id)
                    await self._assert_no_cycle(repo, user_id, folder_id, data.parent_folder_id)
                    folder.parent_folder_id = data.parent_folder_id
                if renaming:
                    folder.name_encrypted = data.name_encrypted
                    folder.name_iv = data.name_iv
                folder.updated_at = utcnow()
        return folder

    async def move(self, folder_id: str, user_id: str, new_parent_id: Optional[str],
                   context: RequestContext = ANONYMOUS) -> Folder:
        return await self.update(folder_id, user_id, FolderUpdate(parent_folder_id=new_parent_id), context)

    async def rename(self, folder_id: str, user_id: str, name_encrypted: str, name_iv: str,
                     context: RequestContext = ANONYMOUS) -> Folder:
        return await self.update(folder_id, user_id,
                                 FolderUpdate(name_encrypted=name_encrypted, name_iv=name_iv), context)

    # ─────────────────────────────────────────────────────────────
    # Delete / restore
    # ─────────────────────────────────────────────────────────────
    async def delete(self, folder_id: str, user_id: str, cascade: bool = False, permanent: bool = False,
                     context: RequestContext = ANONYMOUS) -> DeleteSummary:
        """
        Without cascade the folder must have no active children. With cascade
        every descendant file goes through the file lifecycle (and therefore
        the ledger) and subfolders are removed deepest first, all in one
        transaction.
        """
        # Trashed content is still reachable for a permanent delete
        scope = None if permanent else False
        purge = Purge()

        async with self.audit.track(AuditAction.FOLDER_DELETE, user_id, ResourceType.FOLDER, folder_id, context):
            async with self.database.transaction() as repo:
                folder = await self._get_owned(repo, folder_id, user_id, is_deleted=scope)

                if cascade:
                    folders = await self._descendants(repo, folder, is_deleted=scope)
                else:
                    file_count, folder_count = await repo.count_active_children(folder_id, user_id)
                    if file_count or folder_count:
                        raise ValidationError(
                            "Folder is not empty",
                            details={"files": file_count, "folders": folder_count},
                        )
                    folders = [folder]

                for current in folders:
                    for file in await repo.list_files_in_folder(current.id, user_id, is_deleted=scope):
                        if permanent:
                            purge.merge(await self.files.permanent_delete_in(repo, file))
                        else:
                            purge.merge(await self.files.soft_delete_in(repo, file))

                now = utcnow()
                for current in reversed(folders):
                    if permanent:
                        await repo.delete_folder(current)
                    else:
                        current.is_deleted = True
                        current.deleted_at = now

            await self.files.apply_purge(purge)

        logger.info(f"Folder {folder_id} deleted (cascade={cascade}, permanent={permanent}): "
                    f"{len(folders)} folders, {purge.files} files, {purge.bytes_released} bytes released")
        return DeleteSummary(folders=len(folders), files=purge.files,
                             bytes_released=purge.bytes_released, permanent=permanent)

    async def restore(self, folder_id: str, user_id: str, cascade: bool = False,
                      context: RequestContext = ANONYMOUS) -> RestoreSummary:
        """
        Restore a trashed folder. Its parent is reset to root when the parent
        is gone or trashed. With cascade, trashed descendants come back too;
        each file is charged on its own and files that no longer fit stay in
        the trash and are reported.
        """
        async with self.audit.track(AuditAction.FOLDER_RESTORE, user_id, ResourceType.FOLDER, folder_id, context):
            async with self.database.transaction() as repo:
                folder = await self._get_owned(repo, folder_id, user_id, is_deleted=True)
                if folder.parent_folder_id is not None and \
                        await repo.get_folder(folder.parent_folder_id, user_id) is None:
                    folder.parent_folder_id = None

                summary = RestoreSummary(folder=folder)
                folders = await self._descendants(repo, folder, is_deleted=True) if cascade else [folder]
                for current in folders:
                    current.is_deleted = False
                    current.deleted_at = None
                summary.restored_folders = len(folders)
                # Files below look their parents up again
                await repo.flush()

                if cascade:
                    for current in folders:
                        for file in await repo.list_files_in_folder(current.id, user_id, is_deleted=True):
                            try:
                                await self.files.restore_in(repo, file)
                            except PaymentRequiredError:
                                summary.skipped_file_ids.append(file.id)
                                continue
                            summary.restored_files += 1

        if summary.skipped_file_ids:
            logger.warning(f"Folder {folder_id} restored with {len(summary.skipped_file_ids)} files "
                           f"left in trash for lack of quota")
        logger.info(f"Folder {folder_id} restored (cascade={cascade})")
        return summary
