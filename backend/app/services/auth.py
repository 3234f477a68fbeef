# backend/app/services/auth.py
"""
Authentication and session management.

Sessions of record live in the database. The JWT handed to the client only
names a session; validate_session cross-checks every token against its row
(through the cache when one is configured), so deleting the row revokes the
token immediately.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta, datetime
from typing import List, Optional

import anyio
from sqlalchemy.exc import IntegrityError

from backend.app.core.cache import Cache, session_key
from backend.app.core.clock import utcnow, as_utc
from backend.app.core.config import Settings
from backend.app.core.exceptions import AuthError, ConflictError, NotFoundError, RateLimitError, ValidationError
from backend.app.db.session import Database
from backend.app.db.repository import Repository
from backend.app.models import User, UserSession
from backend.app.models.user import new_id
from backend.app.schemas.auth import RegisterRequest, LoginRequest
from backend.app.security import passwords, tokens, totp
from backend.app.security.envelope import SecretEnvelope
from backend.app.services.audit import AuditService, AuditAction, ResourceType
from backend.app.services.context import RequestContext, ANONYMOUS

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


@dataclass
class IssuedSession:
    access_token: str
    session: UserSession
    user: User


@dataclass
class LoginResult:
    totp_required: bool = False
    issued: Optional[IssuedSession] = None


@dataclass(frozen=True)
class AuthenticatedSession:
    user_id: str
    session_id: str


@dataclass(frozen=True)
class TOTPEnrollment:
    secret: str
    uri: str
    qr_code: str


async def hash_password(password: str) -> str:
    # Argon2 is deliberately slow, keep it off the event loop
    return await anyio.to_thread.run_sync(passwords.hash_password, password)


async def verify_password(password: str, password_hash: str) -> bool:
    return await anyio.to_thread.run_sync(passwords.verify_password, password, password_hash)


async def verify_dummy_password(password: str) -> None:
    await anyio.to_thread.run_sync(passwords.verify_dummy_password, password)


class AuthService:
    def __init__(self, settings: Settings, database: Database, cache: Cache,
                 audit: AuditService, envelope: SecretEnvelope):
        self.settings = settings
        self.database = database
        self.cache = cache
        self.audit = audit
        self.envelope = envelope

    # ─────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────
    async def _open_session(self, repo: Repository, user: User, context: RequestContext) -> IssuedSession:
        now = utcnow()
        session_id = new_id()
        expires_at = now + timedelta(minutes=self.settings.SESSION_EXPIRE_MINUTES)
        access_token = tokens.create_access_token(self.settings, user.id, session_id, now, expires_at)

        session = UserSession(
            id=session_id,
            user_id=user.id,
            token_hash=tokens.hash_token(access_token),
            expires_at=expires_at,
            ip_address=context.ip_address,
            user_agent=(context.user_agent or "")[:512] or None,
            created_at=now,
            last_activity=now,
        )
        await repo.add(session)
        return IssuedSession(access_token=access_token, session=session, user=user)

    async def _cache_session(self, session: UserSession, touched_at: Optional[datetime] = None) -> None:
        touched_at = touched_at or session.last_activity or utcnow()
        await self.cache.set(
            session_key(session.id),
            {
                "user_id": session.user_id,
                "token_hash": session.token_hash,
                "expires_at": as_utc(session.expires_at).isoformat(),
                "touched_at": as_utc(touched_at).isoformat(),
            },
            self.settings.SESSION_CACHE_TTL_SECONDS,
        )

    async def _forget_sessions(self, session_ids: List[str]) -> None:
        for session_id in session_ids:
            await self.cache.delete(session_key(session_id))

    def _cached_session_valid(self, cached: dict, claims: tokens.TokenClaims, token_hash: str) -> bool:
        if cached.get("user_id") != claims.user_id:
            return False
        if not tokens.constant_time_compare(cached.get("token_hash", ""), token_hash):
            return False
        try:
            expires_at = datetime.fromisoformat(cached["expires_at"])
        except (KeyError, TypeError, ValueError):
            return False
        return as_utc(expires_at) > utcnow()

    def _touch_due(self, cached: dict, now: datetime) -> bool:
        try:
            touched_at = as_utc(datetime.fromisoformat(cached["touched_at"]))
        except (KeyError, TypeError, ValueError):
            return True
        return (now - touched_at).total_seconds() >= self.settings.SESSION_TOUCH_INTERVAL_SECONDS

    async def validate_session(self, token: str, context: Optional[RequestContext] = None) -> AuthenticatedSession:
        try:
            return await self._validate_session(token)
        except AuthError as e:
            await self.audit.record(AuditAction.SESSION_VALIDATE_FAILED, None, ResourceType.SESSION,
                                    context=context, success=False, error_message=e.message)
            raise

    async def _purge_expired(self, claims: tokens.TokenClaims) -> None:
        async with self.database.transaction() as repo:
            session = await repo.get_session(claims.session_id)
            if session is not None and session.user_id == claims.user_id:
                await repo.delete_session(session.id)
        await self.cache.delete(session_key(claims.session_id))
        logger.warning(f"Session {claims.session_id} expired")

    async def _validate_session(self, token: str) -> AuthenticatedSession:
        try:
            claims = tokens.decode_access_token(self.settings, token)
        except tokens.ExpiredTokenError as e:
            await self._purge_expired(e.claims)
            raise AuthError("Session has expired")
        token_hash = tokens.hash_token(token)
        now = utcnow()

        cached = await self.cache.get(session_key(claims.session_id))
        if cached is not None and self._cached_session_valid(cached, claims, token_hash):
            logger.debug(f"Session {claims.session_id} found in cache")
            if self._touch_due(cached, now):
                async with self.database.transaction() as repo:
                    touched = await repo.touch_session(claims.session_id, now)
                if not touched:
                    logger.warning(f"Cached session {claims.session_id} no longer exists")
                    await self.cache.delete(session_key(claims.session_id))
                    raise AuthError("Invalid session")
                await self.cache.set(session_key(claims.session_id), dict(cached, touched_at=now.isoformat()),
                                     self.settings.SESSION_CACHE_TTL_SECONDS)
            return AuthenticatedSession(claims.user_id, claims.session_id)

        expired = False
        async with self.database.transaction() as repo:
            session = await repo.get_session(claims.session_id)
            if session is None:
                logger.warning(f"Session {claims.session_id} not found")
                raise AuthError("Invalid session")

            if as_utc(session.expires_at) <= now:
                await repo.delete_session(session.id)
                expired = True
            elif session.user_id != claims.user_id or not tokens.constant_time_compare(session.token_hash,
                                                                                        token_hash):
                logger.warning(f"Session {claims.session_id} does not match its token")
                raise AuthError("Invalid session")
            else:
                await repo.touch_session(session.id, now)

        if expired:
            # Raised outside the block so the delete commits
            logger.warning(f"Session {claims.session_id} expired")
            await self.cache.delete(session_key(claims.session_id))
            raise AuthError("Session has expired")

        await self._cache_session(session, touched_at=now)
        return AuthenticatedSession(claims.user_id, claims.session_id)

    async def logout(self, session_id: str, user_id: Optional[str] = None,
                     context: Optional[RequestContext] = None) -> None:
        async with self.audit.track(AuditAction.USER_LOGOUT, user_id, ResourceType.SESSION, session_id, context):
            async with self.database.transaction() as repo:
                await repo.delete_session(session_id)
            await self.cache.delete(session_key(session_id))
        logger.info(f"Session {session_id} logged out")

    async def logout_all(self, user_id: str, context: Optional[RequestContext] = None) -> int:
        async with self.audit.track(AuditAction.USER_LOGOUT, user_id, ResourceType.USER, user_id, context):
            async with self.database.transaction() as repo:
                session_ids = await repo.delete_sessions_for_user(user_id)
            await self._forget_sessions(session_ids)
        logger.info(f"Logged out {len(session_ids)} sessions for user {user_id}")
        return len(session_ids)

    async def list_sessions(self, user_id: str) -> List[UserSession]:
        async with self.database.transaction() as repo:
            return list(await repo.list_active_sessions(user_id, utcnow()))

    async def cleanup_expired_sessions(self) -> int:
        async with self.database.transaction() as repo:
            removed = await repo.delete_expired_sessions(utcnow())
        logger.info(f"Removed {removed} expired sessions")
        return removed

    # ─────────────────────────────────────────────────────────────
    # Registration and login
    # ─────────────────────────────────────────────────────────────
    async def register(self, data: RegisterRequest, context: RequestContext = ANONYMOUS) -> IssuedSession:
        passwords.check_password_strength(data.password)
        email = data.email.strip().lower()
        logger.info(f"Registering user {data.username}")

        password_hash = await hash_password(data.password)
        async with self.audit.track(AuditAction.USER_REGISTER, None, ResourceType.USER, context=context) as event:
            try:
                async with self.database.transaction() as repo:
                    existing = await repo.find_user_conflict(email, data.username)
                    if existing is not None:
                        field = "email" if existing.email == email else "username"
                        raise ConflictError(f"{field.capitalize()} already registered", details={"field": field})

                    user = User(
                        email=email,
                        username=data.username,
                        password_hash=password_hash,
                        kdf_salt=data.kdf_salt,
                        master_key_encrypted=data.master_key_encrypted,
                        public_key=data.public_key,
                        private_key_encrypted=data.private_key_encrypted,
                        storage_quota=self.settings.DEFAULT_STORAGE_QUOTA,
                        storage_used=0,
                        is_active=True,
                    )
                    await repo.add(user)
                    issued = await self._open_session(repo, user, context)
            except IntegrityError:
                # Lost a race with a concurrent registration
                raise ConflictError("Email or username already registered")
            event.user_id = user.id
            event.resource_id = user.id

        await self._cache_session(issued.session)
        logger.info(f"User {user.id} registered")
        return issued

    async def _login_failed(self, user: Optional[User], context: RequestContext, reason: str,
                            message: str = INVALID_CREDENTIALS) -> AuthError:
        logger.warning(f"Login failed: {reason}")
        await self.audit.record(
            AuditAction.USER_LOGIN_FAILED,
            user.id if user else None,
            ResourceType.USER,
            user.id if user else None,
            context,
            success=False,
            error_message=reason,
        )
        return AuthError(message)

    async def _check_login_lockout(self, context: RequestContext) -> None:
        """Refuse logins from an address with too many recent audited failures."""
        limit = self.settings.LOGIN_MAX_FAILURES
        if limit <= 0 or not context.ip_address:
            return
        failures = await self.audit.count_recent_failures(
            AuditAction.USER_LOGIN_FAILED,
            minutes=self.settings.LOGIN_FAILURE_WINDOW_MINUTES,
            ip_address=context.ip_address,
        )
        if failures >= limit:
            logger.warning(f"Login locked out for {context.ip_address} after {failures} failures")
            raise RateLimitError("Too many failed login attempts, please try again later")

    async def login(self, data: LoginRequest, context: RequestContext = ANONYMOUS,
                    totp_time: Optional[datetime] = None) -> LoginResult:
        identifier = data.identifier.strip()
        await self._check_login_lockout(context)
        async with self.database.transaction() as repo:
            user = await repo.get_user_by_identifier(identifier)

        if user is None:
            # Match the Argon2 cost of a known identifier
            await verify_dummy_password(data.password)
            raise await self._login_failed(None, context, "unknown identifier")
        if not await verify_password(data.password, user.password_hash):
            raise await self._login_failed(user, context, "wrong password")
        if not user.is_active:
            raise await self._login_failed(user, context, "inactive account")

        if user.totp_enabled:
            if not data.totp_code:
                logger.info(f"Login for user {user.id} requires two-factor code")
                return LoginResult(totp_required=True)
            if not self._check_totp(user, data.totp_code, totp_time):
                raise await self._login_failed(user, context, "invalid two-factor code",
                                               "Invalid two-factor authentication code")

        async with self.database.transaction() as repo:
            user = await repo.get_user(user.id)
            if user is None:
                raise AuthError(INVALID_CREDENTIALS)
            user.last_login = utcnow()
            issued = await self._open_session(repo, user, context)

        await self._cache_session(issued.session)
        await self.audit.record(AuditAction.USER_LOGIN, user.id, ResourceType.SESSION,
                                issued.session.id, context)
        logger.info(f"User {user.id} logged in, session {issued.session.id}")
        return LoginResult(issued=issued)

    async def get_user(self, user_id: str) -> User:
        async with self.database.transaction() as repo:
            user = await repo.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", reason=f"user {user_id} missing")
        return user

    async def change_password(self, user_id: str, current_password: str, new_password: str,
                              context: RequestContext = ANONYMOUS) -> None:
        """Re-verifies the current password, then revokes every session of the user."""
        async with self.audit.track(AuditAction.PASSWORD_CHANGE, user_id, ResourceType.USER, user_id, context):
            user = await self.get_user(user_id)
            if not await verify_password(current_password, user.password_hash):
                raise AuthError("Current password is incorrect")
            passwords.check_password_strength(new_password)
            if current_password == new_password:
                raise ValidationError("New password must differ from the current password")

            new_hash = await hash_password(new_password)
            async with self.database.transaction() as repo:
                user = await repo.get_user(user_id, for_update=True)
                user.password_hash = new_hash
                session_ids = await repo.delete_sessions_for_user(user_id)
            await self._forget_sessions(session_ids)

        logger.info(f"Password changed for user {user_id}, {len(session_ids)} sessions revoked")

    # ─────────────────────────────────────────────────────────────
    # Two-factor authentication
    # ─────────────────────────────────────────────────────────────
    def _check_totp(self, user: User, code: str, totp_time: Optional[datetime] = None) -> bool:
        try:
            secret = self.envelope.open(user.totp_secret_encrypted)
        except ValueError:
            logger.error(f"TOTP envelope for user {user.id} cannot be opened with the configured key")
            return False
        return totp.verify_totp(secret, code, for_time=totp_time)

    async def verify_totp(self, user_id: str, code: str, totp_time: Optional[datetime] = None) -> bool:
        user = await self.get_user(user_id)
        if not user.totp_enabled:
            return False
        return self._check_totp(user, code, totp_time)

    async def setup_totp(self, user_id: str) -> TOTPEnrollment:
        """Generate a secret for enrollment. Nothing is stored until enable_totp."""
        user = await self.get_user(user_id)
        if user.totp_enabled:
            raise ValidationError("Two-factor authentication is already enabled")

        secret = totp.generate_totp_secret()
        uri = totp.get_totp_uri(secret, user.email, self.settings.TOTP_ISSUER)
        return TOTPEnrollment(secret=secret, uri=uri, qr_code=totp.generate_qr_code_base64(uri))

    async def enable_totp(self, user_id: str, secret: str, code: str,
                          context: RequestContext = ANONYMOUS, totp_time: Optional[datetime] = None) -> None:
        async with self.audit.track(AuditAction.TOTP_ENABLE, user_id, ResourceType.USER, user_id, context):
            if not totp.verify_totp(secret, code, for_time=totp_time):
                raise ValidationError("Invalid two-factor authentication code")
            async with self.database.transaction() as repo:
                user = await repo.get_user(user_id, for_update=True)
                if user is None:
                    raise NotFoundError("User not found")
                if user.totp_enabled:
                    raise ValidationError("Two-factor authentication is already enabled")
                user.totp_secret_encrypted = self.envelope.seal(secret)
        logger.info(f"Two-factor authentication enabled for user {user_id}")

    async def disable_totp(self, user_id: str, password: str, context: RequestContext = ANONYMOUS) -> None:
        async with self.audit.track(AuditAction.TOTP_DISABLE, user_id, ResourceType.USER, user_id, context):
            user = await self.get_user(user_id)
            if not await verify_password(password, user.password_hash):
                raise AuthError("Password is incorrect")
            if not user.totp_enabled:
                raise ValidationError("Two-factor authentication is not enabled")
            async with self.database.transaction() as repo:
                user = await repo.get_user(user_id, for_update=True)
                user.totp_secret_encrypted = None
        logger.info(f"Two-factor authentication disabled for user {user_id}")
