# backend/app/security/totp.py
"""
RFC 6238 one-time codes for two-factor login (Google Authenticator, Authy, Aegis).

Six digits, 30-second step, HMAC-SHA1 over a Base32 secret. One step of
tolerance either side for clock skew. Secrets are sealed with
security/envelope.py before they are stored.
"""
import base64
import io
from datetime import datetime
from typing import Optional, Union

import pyotp
import qrcode

VALID_WINDOW = 1


def generate_totp_secret() -> str:
    """Random 32-character Base32 secret."""
    return pyotp.random_base32()


def get_totp_uri(secret: str, account_name: str, issuer: str) -> str:
    """
    otpauth://totp/{issuer}:{account}?secret={secret}&issuer={issuer}

    This is what gets encoded in the QR code.
    """
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def generate_qr_code_base64(uri: str) -> str:
    """
    PNG of the enrollment URI, Base64 encoded.
    Frontend can display this directly using: <img src="data:image/png;base64,{result}">
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def normalize_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    code = code.strip().replace(" ", "")
    if len(code) != 6 or not code.isdigit():
        return None
    return code


def verify_totp(secret: str, code: Optional[str],
                for_time: Optional[Union[int, datetime]] = None) -> bool:
    """
    Verify a 6-digit code, accepting the previous and next 30s step.
    `for_time` pins the clock (tests); defaults to now.
    """
    code = normalize_code(code)
    if not secret or code is None:
        return False
    totp = pyotp.TOTP(secret)
    if for_time is None:
        return totp.verify(code, valid_window=VALID_WINDOW)
    return totp.verify(code, for_time=for_time, valid_window=VALID_WINDOW)
