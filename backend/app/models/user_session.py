# backend/app/models/user_session.py
from sqlalchemy import Column, String, DateTime, ForeignKey

from backend.app.core.clock import utcnow
from backend.app.db.base import Base


class UserSession(Base):
    """
    Server-side session of record. A JWT is only honored while its row exists.
    Only the SHA-256 digest of the issued token is stored.
    """
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    token_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_activity = Column(DateTime(timezone=True), default=utcnow)
