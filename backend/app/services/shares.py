# backend/app/services/shares.py
"""
Share links: anonymous, token-based access to a single file.

A share is Active until it expires, runs out of downloads or is revoked.
Anonymous callers cannot tell those states apart (or from a share that never
existed): all of them are "not available". Only the password check is
reported distinctly, since the token holder already knows the link is live.

Gate order: exists (file included) -> active -> not expired -> under the
download limit -> password. Downloads take their slot with a guarded UPDATE
after the blob has been opened, so a storage failure never costs a slot and
concurrent downloads never overshoot max_downloads.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from backend.app.core.cache import Cache, share_key
from backend.app.core.clock import utcnow, as_utc
from backend.app.core.config import Settings
from backend.app.core.exceptions import AuthError, NotFoundError, ValidationError
from backend.app.db.repository import Repository
from backend.app.db.session import Database
from backend.app.models import Share
from backend.app.schemas.share import ShareCreate, ShareUpdate
from backend.app.security import tokens
from backend.app.services.audit import AuditService, AuditAction, ResourceType
from backend.app.services.auth import hash_password, verify_password
from backend.app.services.context import RequestContext, ANONYMOUS
from backend.app.storage.blob_store import BlobStore, BlobStream

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Share link is not available"


@dataclass
class ResolvedShare:
    """Everything a share gate and an anonymous download need, cacheable as JSON."""
    share_id: str
    share_token: str
    file_id: str
    owner_id: str
    file_key_encrypted: str
    password_hash: Optional[str]
    expires_at: Optional[datetime]
    max_downloads: Optional[int]
    download_count: int
    is_active: bool
    filename_encrypted: str
    filename_iv: str
    encryption_algorithm: str
    mime_type: Optional[str]
    file_size: int
    encrypted_size: int
    storage_path: str

    @property
    def downloads_remaining(self) -> Optional[int]:
        if self.max_downloads is None:
            return None
        return max(self.max_downloads - self.download_count, 0)

    def to_cache(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "ResolvedShare":
        data = dict(data)
        if data.get("expires_at"):
            data["expires_at"] = as_utc(datetime.fromisoformat(data["expires_at"]))
        return cls(**data)


@dataclass
class ShareDecision:
    granted: bool
    reason: Optional[str] = None
    share: Optional[ResolvedShare] = None


@dataclass
class ShareFileStats:
    file_id: str
    total_shares: int
    active_shares: int
    total_downloads: int


def _not_found(share_id: str) -> NotFoundError:
    return NotFoundError("Share not found", reason=f"share {share_id} not owned by caller")


class ShareService:
    def __init__(self, settings: Settings, database: Database, blobs: BlobStore,
                 cache: Cache, audit: AuditService):
        self.settings = settings
        self.database = database
        self.blobs = blobs
        self.cache = cache
        self.audit = audit

    async def _invalidate(self, share_token: str) -> None:
        await self.cache.delete(share_key(share_token))

    async def _get_owned(self, repo: Repository, share_id: str, user_id: str) -> Share:
        share = await repo.get_share(share_id, user_id)
        if share is None:
            logger.warning(f"Share {share_id} not found for user {user_id}")
            raise _not_found(share_id)
        return share

    @staticmethod
    def _validate_expiry(expires_at: Optional[datetime]) -> Optional[datetime]:
        if expires_at is None:
            return None
        expires_at = as_utc(expires_at)
        if expires_at <= utcnow():
            raise ValidationError("Expiration date must be in the future")
        return expires_at

    # ─────────────────────────────────────────────────────────────
    # Owner operations
    # ─────────────────────────────────────────────────────────────
    async def create(self, user_id: str, data: ShareCreate, context: RequestContext = ANONYMOUS) -> Share:
        async with self.audit.track(AuditAction.SHARE_CREATE, user_id, ResourceType.SHARE,
                                    context=context) as event:
            expires_at = self._validate_expiry(data.expires_at)
            if data.max_downloads is not None and data.max_downloads < 1:
                raise ValidationError("max_downloads must be at least 1")
            password_hash = await hash_password(data.password) if data.password else None

            async with self.database.transaction() as repo:
                file = await repo.get_file(data.file_id, user_id)
                if file is None:
                    raise NotFoundError("File not found", reason=f"file {data.file_id} not visible to {user_id}")
                share = Share(
                    file_id=file.id,
                    owner_id=user_id,
                    share_token=tokens.generate_share_token(),
                    file_key_encrypted=data.file_key_encrypted,
                    password_hash=password_hash,
                    expires_at=expires_at,
                    max_downloads=data.max_downloads,
                    download_count=0,
                    is_active=True,
                )
                await repo.add(share)
            event.resource_id = share.id

        logger.info(f"Share {share.id} created for file {data.file_id}")
        return share

    async def get(self, share_id: str, user_id: str) -> Share:
        async with self.database.transaction() as repo:
            return await self._get_owned(repo, share_id, user_id)

    async def list(self, user_id: str, file_id: Optional[str] = None, is_active: Optional[bool] = None,
                   limit: int = 50, offset: int = 0) -> Tuple[Sequence[Share], int]:
        async with self.database.transaction() as repo:
            return await repo.list_shares(user_id, file_id=file_id, is_active=is_active,
                                          limit=limit, offset=offset)

    async def update(self, share_id: str, user_id: str, data: ShareUpdate,
                     context: RequestContext = ANONYMOUS) -> Share:
        fields = data.model_fields_set
        if not fields:
            raise ValidationError("No changes supplied")

        async with self.audit.track(AuditAction.SHARE_UPDATE, user_id, ResourceType.SHARE, share_id, context):
            expires_at = self._validate_expiry(data.expires_at) if "expires_at" in fields else None
            password_hash = None
            if "password" in fields and data.password:
                password_hash = await hash_password(data.password)

            async with self.database.transaction() as repo:
                share = await self._get_owned(repo, share_id, user_id)
                if "password" in fields:
                    # null removes protection
                    share.password_hash = password_hash
                if "expires_at" in fields:
                    share.expires_at = expires_at
                if "max_downloads" in fields:
                    if data.max_downloads is not None and data.max_downloads < share.download_count:
                        raise ValidationError(
                            "max_downloads cannot be lower than the downloads already served",
                            details={"download_count": share.download_count},
                        )
                    share.max_downloads = data.max_downloads
                if "is_active" in fields and data.is_active is not None:
                    share.is_active = data.is_active
            await self._invalidate(share.share_token)

        logger.info(f"Share {share_id} updated ({', '.join(sorted(fields))})")
        return share

    async def revoke(self, share_id: str, user_id: str, context: RequestContext = ANONYMOUS) -> Share:
        return await self.update(share_id, user_id, ShareUpdate(is_active=False), context)

    async def delete(self, share_id: str, user_id: str, context: RequestContext = ANONYMOUS) -> None:
        async with self.audit.track(AuditAction.SHARE_DELETE, user_id, ResourceType.SHARE, share_id, context):
            async with self.database.transaction() as repo:
                share = await self._get_owned(repo, share_id, user_id)
                token = share.share_token
                await repo.delete_share(share)
            await self._invalidate(token)
        logger.info(f"Share {share_id} deleted")

    async def file_stats(self, file_id: str, user_id: str) -> ShareFileStats:
        async with self.database.transaction() as repo:
            if await repo.get_file(file_id, user_id, is_deleted=None) is None:
                raise NotFoundError("File not found")
            shares, total = await repo.list_shares(user_id, file_id=file_id, limit=10_000)
        return ShareFileStats(
            file_id=file_id,
            total_shares=total,
            active_shares=sum(1 for s in shares if s.is_active),
            total_downloads=sum(s.download_count for s in shares),
        )

    async def cleanup_expired(self) -> int:
        async with self.database.transaction() as repo:
            expired = await repo.delete_expired_shares(utcnow())
        for token in expired:
            await self._invalidate(token)
        logger.info(f"Removed {len(expired)} expired shares")
        return len(expired)

    # ─────────────────────────────────────────────────────────────
    # Anonymous access
    # ─────────────────────────────────────────────────────────────
    async def _load(self, share_token: str, use_cache: bool) -> Optional[ResolvedShare]:
        if use_cache:
            cached = await self.cache.get(share_key(share_token))
            if cached is not None:
                try:
                    return ResolvedShare.from_cache(cached)
                except (TypeError, ValueError):
                    logger.warning("Discarding malformed share cache entry")

        async with self.database.transaction() as repo:
            share = await repo.get_share_by_token(share_token)
            if share is None:
                return None
            file = await repo.get_file_by_id(share.file_id)
            if file is None or file.is_deleted:
                return None

        resolved = ResolvedShare(
            share_id=share.id,
            share_token=share.share_token,
            file_id=file.id,
            owner_id=share.owner_id,
            file_key_encrypted=share.file_key_encrypted,
            password_hash=share.password_hash,
            expires_at=as_utc(share.expires_at),
            max_downloads=share.max_downloads,
            download_count=share.download_count,
            is_active=share.is_active,
            filename_encrypted=file.filename_encrypted,
            filename_iv=file.filename_iv,
            encryption_algorithm=file.encryption_algorithm,
            mime_type=file.mime_type,
            file_size=file.file_size,
            encrypted_size=file.encrypted_size,
            storage_path=file.storage_path,
        )
        if resolved.is_active:
            ttl = self.settings.SHARE_CACHE_TTL_SECONDS
            if resolved.expires_at is not None:
                ttl = min(ttl, int((resolved.expires_at - utcnow()).total_seconds()))
            await self.cache.set(share_key(share_token), resolved.to_cache(), ttl)
        return resolved

    async def evaluate(self, share_token: str, password: Optional[str] = None,
                       use_cache: bool = True) -> ShareDecision:
        """
        The single gate. Returns a decision instead of raising; an expired
        share is switched off the first time its expiry is observed.
        """
        resolved = await self._load(share_token, use_cache)
        if resolved is None:
            return ShareDecision(False, "not_found")
        if not resolved.is_active:
            return ShareDecision(False, "revoked", resolved)

        if resolved.expires_at is not None and resolved.expires_at <= utcnow():
            async with self.database.transaction() as repo:
                await repo.deactivate_share(resolved.share_id)
            await self._invalidate(share_token)
            resolved.is_active = False
            logger.info(f"Share {resolved.share_id} expired, deactivated")
            return ShareDecision(False, "expired", resolved)

        if resolved.max_downloads is not None and resolved.download_count >= resolved.max_downloads:
            return ShareDecision(False, "exhausted", resolved)

        if resolved.password_hash is not None:
            if not password:
                return ShareDecision(False, "password_required", resolved)
            if not await verify_password(password, resolved.password_hash):
                return ShareDecision(False, "password_invalid", resolved)

        return ShareDecision(True, None, resolved)

    async def _deny(self, decision: ShareDecision, context: RequestContext) -> Exception:
        share_id = decision.share.share_id if decision.share else None
        logger.warning(f"Share access denied ({decision.reason}) for share {share_id}")
        await self.audit.record(AuditAction.SHARE_ACCESS_DENIED, None, ResourceType.SHARE, share_id,
                                context, success=False, error_message=decision.reason)
        if decision.reason == "password_required":
            return AuthError("Password required", details={"password_required": True})
        if decision.reason == "password_invalid":
            return AuthError("Invalid password", details={"password_required": True})
        return NotFoundError(NOT_AVAILABLE, reason=decision.reason)

    async def resolve(self, share_token: str, password: Optional[str] = None,
                      context: RequestContext = ANONYMOUS, use_cache: bool = True) -> ResolvedShare:
        decision = await self.evaluate(share_token, password, use_cache)
        if not decision.granted:
            raise await self._deny(decision, context)
        return decision.share

    async def metadata(self, share_token: str, password: Optional[str] = None,
                       context: RequestContext = ANONYMOUS) -> ResolvedShare:
        resolved = await self.resolve(share_token, password, context)
        async with self.database.transaction() as repo:
            await repo.touch_share(resolved.share_id, utcnow())
        await self.audit.record(AuditAction.SHARE_ACCESS, None, ResourceType.SHARE, resolved.share_id, context)
        return resolved

    async def download(self, share_token: str, password: Optional[str] = None,
                       context: RequestContext = ANONYMOUS) -> Tuple[ResolvedShare, BlobStream]:
        # Authoritative read: a download must never be granted off a stale cache entry
        resolved = await self.resolve(share_token, password, context, use_cache=False)

        async with self.audit.track(AuditAction.SHARE_DOWNLOAD, None, ResourceType.SHARE,
                                    resolved.share_id, context):
            stream = await self.blobs.get(resolved.storage_path)

            async with self.database.transaction() as repo:
                file = await repo.get_file_by_id(resolved.file_id)
                consumed = file is not None and not file.is_deleted and \
                    await repo.consume_share_download(resolved.share_id, utcnow())

            if not consumed:
                await stream.aclose()
                raise NotFoundError(NOT_AVAILABLE, reason="download limit race lost")

            await self._invalidate(share_token)
            resolved.download_count += 1

        logger.info(f"Share {resolved.share_id} downloaded ({resolved.download_count}"
                    f"/{resolved.max_downloads if resolved.max_downloads is not None else 'unlimited'})")
        return resolved, stream
