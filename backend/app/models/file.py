# backend/app/models/file.py
from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Text, BigInteger, Integer,
    CheckConstraint, UniqueConstraint,
)

from backend.app.core.clock import utcnow
from backend.app.db.base import Base
from backend.app.models.user import new_id


class File(Base):
    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint("encrypted_size > 0", name="ck_files_encrypted_size_positive"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    parent_folder_id = Column(String(36), ForeignKey("folders.id"), index=True, nullable=True)

    # --- METADATA (encrypted client-side) ---
    filename_encrypted = Column(Text, nullable=False)
    filename_iv = Column(String(64), nullable=False)
    # Per-file content key wrapped with the owner's master key
    file_key_encrypted = Column(Text, nullable=False)
    encryption_algorithm = Column(String(32), nullable=False, default="AES-256-GCM")

    # Plaintext size is informational; encrypted_size is what the ledger charges
    file_size = Column(BigInteger, nullable=False)
    encrypted_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(255), nullable=True)

    storage_path = Column(String(512), nullable=False)
    thumbnail_path = Column(String(512), nullable=True)
    file_hash = Column(String(128), index=True, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def has_thumbnail(self) -> bool:
        return self.thumbnail_path is not None


class FileVersion(Base):
    """Immutable snapshot of earlier content. Never updated after insert."""
    __tablename__ = "file_versions"
    __table_args__ = (
        UniqueConstraint("file_id", "version_number", name="uq_file_versions_number"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    file_id = Column(String(36), ForeignKey("files.id"), index=True, nullable=False)
    version_number = Column(Integer, nullable=False)
    storage_path = Column(String(512), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_key_encrypted = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
