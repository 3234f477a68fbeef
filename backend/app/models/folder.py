# backend/app/models/folder.py
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text

from backend.app.core.clock import utcnow
from backend.app.db.base import Base
from backend.app.models.user import new_id


class Folder(Base):
    """
    Hierarchy node. Children point at their parent through parent_folder_id;
    NULL means the folder sits at the user's root.
    """
    __tablename__ = "folders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    parent_folder_id = Column(String(36), ForeignKey("folders.id"), index=True, nullable=True)

    # Encrypted client-side, the server only relays it
    name_encrypted = Column(Text, nullable=False)
    name_iv = Column(String(64), nullable=False)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
