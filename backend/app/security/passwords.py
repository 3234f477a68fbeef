# backend/app/security/passwords.py
"""
Password hashing and strength policy.

Argon2id via argon2-cffi. Used for account passwords and share passwords.
The hash is a login verifier only: nothing client-side is derived from it.
"""
import re

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, InvalidHashError, VerificationError

from backend.app.core.exceptions import ValidationError

ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = "@$!%*?&"

_RULES = [
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
    (re.compile(f"[{re.escape(SPECIAL_CHARACTERS)}]"), f"one special character ({SPECIAL_CHARACTERS})"),
]


def hash_password(password: str) -> str:
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Returns False on mismatch and on a malformed stored hash."""
    if not password or not password_hash:
        return False
    try:
        return ph.verify(password_hash, password)
    except (VerifyMismatchError, InvalidHashError, VerificationError):
        return False


_dummy_hash = None


def verify_dummy_password(password: str) -> None:
    """Spend one real Argon2 verification when there is no account to check against."""
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = ph.hash("no-such-account")
    verify_password(password, _dummy_hash)


def check_password_strength(password: str) -> None:
    """
    Raise ValidationError listing every rule the password breaks.

    Policy: 8 to 128 characters with at least one lowercase letter,
    one uppercase letter, one number and one special character.
    """
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    for pattern, label in _RULES:
        if not pattern.search(password):
            problems.append(label)

    if problems:
        raise ValidationError(
            "Password does not meet strength requirements",
            details={"password": [f"Password must contain {p}" for p in problems]},
        )
