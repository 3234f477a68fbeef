# backend/app/models/user.py
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, BigInteger, Text, CheckConstraint

from backend.app.core.clock import utcnow
from backend.app.db.base import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("storage_used >= 0", name="ck_users_storage_used_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(30), unique=True, index=True, nullable=False)

    # Login verifier only. Never used to derive any content key.
    password_hash = Column(String(255), nullable=False)

    # --- KEY ENVELOPES (opaque to the server, produced client-side) ---
    # kdf_salt: base64 salt the client uses to derive its master key
    kdf_salt = Column(String(64), nullable=False)
    master_key_encrypted = Column(Text, nullable=False)
    public_key = Column(Text, nullable=False)
    private_key_encrypted = Column(Text, nullable=False)

    # Fernet envelope of the TOTP secret. NULL means 2FA is disabled.
    totp_secret_encrypted = Column(Text, nullable=True)

    # --- STORAGE LEDGER ---
    # 0 <= storage_used <= storage_quota, maintained by services/ledger.py
    storage_quota = Column(BigInteger, nullable=False)
    storage_used = Column(BigInteger, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    last_login = Column(DateTime(timezone=True), nullable=True)

    @property
    def totp_enabled(self) -> bool:
        return self.totp_secret_encrypted is not None
