# backend/app/services/__init__.py
"""
Service container.

Built once by the process entry point from explicit dependencies; nothing
in here reaches for a global engine, cache or blob store.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backend.app.core.cache import Cache
from backend.app.core.config import Settings
from backend.app.db.session import Database
from backend.app.security.envelope import SecretEnvelope
from backend.app.storage.blob_store import BlobStore

if TYPE_CHECKING:
    from backend.app.services.audit import AuditService
    from backend.app.services.auth import AuthService
    from backend.app.services.files import FileService
    from backend.app.services.folders import FolderService
    from backend.app.services.shares import ShareService
    from backend.app.services.users import UserService


@dataclass
class Services:
    settings: Settings
    database: Database
    cache: Cache
    blobs: BlobStore
    audit: "AuditService"
    auth: "AuthService"
    files: "FileService"
    folders: "FolderService"
    shares: "ShareService"
    users: "UserService"


def build_services(settings: Settings, database: Database, cache: Cache, blobs: BlobStore) -> Services:
    from backend.app.services.audit import AuditService
    from backend.app.services.auth import AuthService
    from backend.app.services.files import FileService
    from backend.app.services.folders import FolderService
    from backend.app.services.shares import ShareService
    from backend.app.services.users import UserService

    audit = AuditService(database)
    files = FileService(settings, database, blobs, cache, audit)
    return Services(
        settings=settings,
        database=database,
        cache=cache,
        blobs=blobs,
        audit=audit,
        auth=AuthService(settings, database, cache, audit, SecretEnvelope.from_settings(settings)),
        files=files,
        folders=FolderService(settings, database, files, audit),
        shares=ShareService(settings, database, blobs, cache, audit),
        users=UserService(database, blobs, cache, audit),
    )
