# Import every model so Base.metadata knows all tables
from backend.app.models.user import User
from backend.app.models.folder import Folder
from backend.app.models.file import File, FileVersion
from backend.app.models.share import Share
from backend.app.models.user_session import UserSession
from backend.app.models.audit_log import AuditLog

__all__ = ["User", "Folder", "File", "FileVersion", "Share", "UserSession", "AuditLog"]
