# backend/app/services/ledger.py
"""
Storage accounting.

Not a service with state of its own: a protocol every content change
follows inside the transaction that makes the change. Charging locks the
owner's row, checks the quota against that fresh read and applies the delta
with a guarded UPDATE, so two concurrent uploads cannot both pass a check
against a stale total.
"""
import logging

from backend.app.core.exceptions import NotFoundError, PaymentRequiredError
from backend.app.db.repository import Repository
from backend.app.models import User

logger = logging.getLogger(__name__)


def _quota_error(user: User, amount: int) -> PaymentRequiredError:
    return PaymentRequiredError(
        "Storage quota exceeded",
        details={
            "quota": user.storage_quota,
            "used": user.storage_used,
            "required": amount,
            "available": max(user.storage_quota - user.storage_used, 0),
        },
    )


async def _locked_user(repo: Repository, user_id: str) -> User:
    user = await repo.get_user(user_id, for_update=True)
    if user is None:
        raise NotFoundError("User not found", reason=f"ledger: user {user_id} missing")
    return user


async def ensure_available(repo: Repository, user_id: str, amount: int) -> User:
    """Fail fast with PaymentRequired before any side effect. Applies nothing."""
    user = await repo.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found", reason=f"ledger: user {user_id} missing")
    if amount > 0 and user.storage_used + amount > user.storage_quota:
        raise _quota_error(user, amount)
    return user


async def charge(repo: Repository, user_id: str, amount: int) -> None:
    if amount <= 0:
        return
    user = await _locked_user(repo, user_id)
    if user.storage_used + amount > user.storage_quota:
        logger.warning(f"Quota exceeded for user {user_id}: used={user.storage_used} "
                       f"quota={user.storage_quota} required={amount}")
        raise _quota_error(user, amount)
    if not await repo.adjust_storage_used(user_id, amount):
        # Another writer got in between the read and the guarded UPDATE
        logger.warning(f"Guarded quota update rejected for user {user_id}")
        raise _quota_error(user, amount)


async def release(repo: Repository, user_id: str, amount: int) -> None:
    if amount <= 0:
        return
    await repo.adjust_storage_used(user_id, -amount)
