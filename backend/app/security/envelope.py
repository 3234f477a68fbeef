# backend/app/security/envelope.py
"""
Server-side envelope for TOTP secrets.

The secret must be readable by the server (it verifies codes), so it cannot
be wrapped with the user's client-held master key. It is sealed with Fernet
under a server key instead: TOTP_ENCRYPTION_KEY when configured, otherwise
a key derived from SECRET_KEY with HKDF-SHA256.
"""
import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)

HKDF_INFO = b"crypticstorage-totp-secret-v1"


def derive_fernet_key(secret_key: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=HKDF_INFO,
    )
    return base64.urlsafe_b64encode(hkdf.derive(secret_key.encode("utf-8")))


class SecretEnvelope:
    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretEnvelope":
        if settings.TOTP_ENCRYPTION_KEY:
            return cls(settings.TOTP_ENCRYPTION_KEY.encode("utf-8"))
        if settings.is_production:
            logger.warning("TOTP_ENCRYPTION_KEY not set, deriving TOTP key from SECRET_KEY")
        return cls(derive_fernet_key(settings.SECRET_KEY))

    def seal(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def open(self, token: str) -> str:
        """Raises ValueError if the envelope was not sealed with this key."""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ValueError("TOTP secret envelope could not be opened") from e
