# backend/app/models/share.py
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, Integer, CheckConstraint

from backend.app.core.clock import utcnow
from backend.app.db.base import Base
from backend.app.models.user import new_id


class Share(Base):
    """
    Capability token granting anonymous access to one file.

    file_key_encrypted is the content key re-wrapped for the share link,
    never the owner's own envelope.
    """
    __tablename__ = "shares"
    __table_args__ = (
        CheckConstraint(
            "max_downloads IS NULL OR download_count <= max_downloads",
            name="ck_shares_download_limit",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    file_id = Column(String(36), ForeignKey("files.id"), index=True, nullable=False)
    owner_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)

    share_token = Column(String(64), unique=True, index=True, nullable=False)
    file_key_encrypted = Column(Text, nullable=False)
    password_hash = Column(String(255), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    max_downloads = Column(Integer, nullable=True)
    download_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_accessed = Column(DateTime(timezone=True), nullable=True)

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None
