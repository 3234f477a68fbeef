# backend/app/models/audit_log.py
"""
Append-only audit trail.

user_id carries no foreign key: anonymous share events have no user, and
the trail outlives account deletion.
"""
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text

from backend.app.core.clock import utcnow
from backend.app.db.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), index=True, nullable=True)
    action = Column(String(64), index=True, nullable=False)
    resource_type = Column(String(32), nullable=True)
    resource_id = Column(String(64), nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), index=True, default=utcnow)
