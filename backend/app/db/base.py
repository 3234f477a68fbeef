# backend/app/db/base.py
"""
SQLAlchemy declarative base.

All ORM models inherit from Base. Engine and session factories live in
db/session.py and are created by the process entry point, not at import.
"""
from sqlalchemy.orm import DeclarativeBase


# ─────────────────────────────────────────────────────────────────────────────
# Declarative Base for ORM Models
# ─────────────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Usage:
        class User(Base):
            __tablename__ = "users"
            id = Column(String(36), primary_key=True)
            ...
    """
    pass


__all__ = ["Base"]
