from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from backend.app.core.cache import session_key
from backend.app.core.clock import as_utc
from backend.app.core.exceptions import AuthError, ConflictError, RateLimitError, ValidationError
from backend.app.schemas.auth import LoginRequest
from backend.app.security import passwords, tokens
from backend.app.services.audit import AuditAction
from backend.app.services.context import RequestContext

from tests.factories import PASSWORD, QUOTA, registration

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
CONTEXT = RequestContext(ip_address="203.0.113.7", user_agent="pytest")


async def login(services, identifier="alice", password=PASSWORD, totp_code=None, totp_time=None):
    result = await services.auth.login(
        LoginRequest(identifier=identifier, password=password, totp_code=totp_code),
        CONTEXT,
        totp_time=totp_time,
    )
    return result


# --- Registration ---

async def test_register_opens_a_session(services):
    issued = await services.auth.register(registration("alice"), CONTEXT)

    assert issued.user.email == "alice@example.com"
    assert issued.user.storage_used == 0
    assert issued.user.storage_quota == QUOTA
    assert issued.user.password_hash != PASSWORD

    authenticated = await services.auth.validate_session(issued.access_token)
    assert authenticated.user_id == issued.user.id
    assert authenticated.session_id == issued.session.id


async def test_register_normalizes_email(services):
    issued = await services.auth.register(registration("alice", email="Alice@Example.COM"))
    assert issued.user.email == "alice@example.com"


async def test_register_duplicate_email(services, user):
    with pytest.raises(ConflictError) as excinfo:
        await services.auth.register(registration("alice2", email="alice@example.com"))
    assert excinfo.value.details == {"field": "email"}


async def test_register_duplicate_username(services, user):
    with pytest.raises(ConflictError) as excinfo:
        await services.auth.register(registration("alice", email="someone@example.com"))
    assert excinfo.value.details == {"field": "username"}


async def test_register_weak_password(services):
    with pytest.raises(ValidationError):
        await services.auth.register(registration("carol", password="password"))

    with pytest.raises(AuthError):
        await login(services, "carol", "password")


# --- Login ---

async def test_login_by_email_or_username(services, user):
    by_username = await login(services, "alice")
    by_email = await login(services, "alice@example.com")

    assert not by_username.totp_required
    assert by_username.issued.user.id == user.id
    assert by_email.issued.user.id == user.id
    assert by_username.issued.session.id != by_email.issued.session.id
    assert by_username.issued.user.last_login is not None


async def test_login_failures_share_one_message(services, user):
    with pytest.raises(AuthError) as wrong_password:
        await login(services, "alice", "Wr0ng!Pass")
    with pytest.raises(AuthError) as unknown_user:
        await login(services, "nobody", PASSWORD)

    assert wrong_password.value.message == unknown_user.value.message == "Invalid credentials"

    failures = await services.audit.count_recent_failures(AuditAction.USER_LOGIN_FAILED,
                                                          ip_address=CONTEXT.ip_address)
    assert failures == 2


async def test_unknown_identifier_still_runs_a_password_check(services, monkeypatch, user):
    checked = []
    real_verify = passwords.verify_password

    def recording_verify(password, password_hash):
        checked.append(password)
        return real_verify(password, password_hash)

    monkeypatch.setattr(passwords, "verify_password", recording_verify)
    with pytest.raises(AuthError):
        await login(services, "nobody", PASSWORD)
    assert checked == [PASSWORD]


async def test_repeated_login_failures_lock_out_the_address(services, settings, user):
    settings.LOGIN_MAX_FAILURES = 2
    for _ in range(2):
        with pytest.raises(AuthError):
            await login(services, "alice", "Wr0ng!Pass")

    with pytest.raises(RateLimitError):
        await login(services)

    elsewhere = RequestContext(ip_address="198.51.100.9", user_agent="pytest")
    result = await services.auth.login(LoginRequest(identifier="alice", password=PASSWORD), elsewhere)
    assert result.issued is not None


async def test_login_rejects_inactive_account(services, user):
    async with services.database.transaction() as repo:
        (await repo.get_user(user.id, for_update=True)).is_active = False

    with pytest.raises(AuthError) as excinfo:
        await login(services)
    assert excinfo.value.message == "Invalid credentials"


# --- Sessions ---

async def test_sessions_are_independent(services, user):
    first = (await login(services)).issued
    second = (await login(services)).issued

    await services.auth.logout(first.session.id, user.id)

    with pytest.raises(AuthError):
        await services.auth.validate_session(first.access_token)
    assert (await services.auth.validate_session(second.access_token)).session_id == second.session.id


async def test_logout_revokes_cached_session(services, cache, user):
    issued = (await login(services)).issued
    await services.auth.validate_session(issued.access_token)
    assert await cache.get(session_key(issued.session.id)) is not None

    await services.auth.logout(issued.session.id, user.id)

    assert await cache.get(session_key(issued.session.id)) is None
    with pytest.raises(AuthError):
        await services.auth.validate_session(issued.access_token)


async def test_logout_all(services, user):
    issued = [(await login(services)).issued for _ in range(3)]

    # Registration opened one more
    assert await services.auth.logout_all(user.id) == 4

    for session in issued:
        with pytest.raises(AuthError):
            await services.auth.validate_session(session.access_token)
    assert await services.auth.list_sessions(user.id) == []


async def test_expired_session_is_deleted(services, cache, user):
    issued = (await login(services)).issued
    async with services.database.transaction() as repo:
        session = await repo.get_session(issued.session.id)
        session.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await cache.delete(session_key(issued.session.id))

    with pytest.raises(AuthError) as excinfo:
        await services.auth.validate_session(issued.access_token)
    assert excinfo.value.message == "Session has expired"

    async with services.database.transaction() as repo:
        assert await repo.get_session(issued.session.id) is None


async def test_naturally_expired_token_deletes_its_session(services, settings, cache, user):
    settings.SESSION_EXPIRE_MINUTES = -1
    issued = (await login(services)).issued

    with pytest.raises(AuthError) as excinfo:
        await services.auth.validate_session(issued.access_token)
    assert excinfo.value.message == "Session has expired"

    async with services.database.transaction() as repo:
        assert await repo.get_session(issued.session.id) is None
    assert await cache.get(session_key(issued.session.id)) is None


async def set_last_activity(services, session_id: str, when: datetime) -> None:
    async with services.database.transaction() as repo:
        session = await repo.get_session(session_id)
        session.last_activity = when


async def get_last_activity(services, session_id: str) -> datetime:
    async with services.database.transaction() as repo:
        return as_utc((await repo.get_session(session_id)).last_activity)


async def test_cached_validation_refreshes_last_activity(services, settings, cache, user):
    settings.SESSION_TOUCH_INTERVAL_SECONDS = 0
    issued = (await login(services)).issued
    stale = datetime.now(timezone.utc) - timedelta(hours=1)
    await set_last_activity(services, issued.session.id, stale)
    assert await cache.get(session_key(issued.session.id)) is not None

    await services.auth.validate_session(issued.access_token)
    assert await get_last_activity(services, issued.session.id) > stale + timedelta(minutes=59)


async def test_cached_validation_throttles_activity_writes(services, cache, user):
    issued = (await login(services)).issued
    stale = datetime.now(timezone.utc) - timedelta(hours=1)
    await set_last_activity(services, issued.session.id, stale)

    await services.auth.validate_session(issued.access_token)
    assert await get_last_activity(services, issued.session.id) < stale + timedelta(minutes=1)


async def test_cached_session_without_row_is_rejected(services, settings, cache, user):
    settings.SESSION_TOUCH_INTERVAL_SECONDS = 0
    issued = (await login(services)).issued
    async with services.database.transaction() as repo:
        await repo.delete_session(issued.session.id)

    with pytest.raises(AuthError) as excinfo:
        await services.auth.validate_session(issued.access_token)
    assert excinfo.value.message == "Invalid session"
    assert await cache.get(session_key(issued.session.id)) is None


async def test_token_for_other_users_session_rejected(services, settings, user, other_user):
    issued = (await login(services)).issued
    now = datetime.now(timezone.utc)
    forged = tokens.create_access_token(settings, other_user.id, issued.session.id, now, now + timedelta(hours=1))

    with pytest.raises(AuthError):
        await services.auth.validate_session(forged)


async def test_reissued_token_for_same_session_rejected(services, settings, cache, user):
    issued = (await login(services)).issued
    now = datetime.now(timezone.utc) + timedelta(seconds=5)
    copy = tokens.create_access_token(settings, user.id, issued.session.id, now, now + timedelta(hours=1))
    await cache.delete(session_key(issued.session.id))

    with pytest.raises(AuthError):
        await services.auth.validate_session(copy)


async def test_failed_validation_is_audited(services, user):
    with pytest.raises(AuthError):
        await services.auth.validate_session("garbage", CONTEXT)
    assert await services.audit.count_recent_failures(AuditAction.SESSION_VALIDATE_FAILED) == 1


async def test_list_sessions(services, user):
    await login(services)
    sessions = await services.auth.list_sessions(user.id)
    assert len(sessions) == 2
    assert all(s.user_id == user.id for s in sessions)


async def test_cleanup_expired_sessions(services, user):
    issued = (await login(services)).issued
    async with services.database.transaction() as repo:
        session = await repo.get_session(issued.session.id)
        session.expires_at = datetime.now(timezone.utc) - timedelta(days=1)

    assert await services.auth.cleanup_expired_sessions() == 1
    assert len(await services.auth.list_sessions(user.id)) == 1


# --- Password change ---

async def test_change_password_revokes_every_session(services, user):
    issued = (await login(services)).issued

    await services.auth.change_password(user.id, PASSWORD, "N3w!Password")

    with pytest.raises(AuthError):
        await services.auth.validate_session(issued.access_token)
    with pytest.raises(AuthError):
        await login(services, "alice", PASSWORD)
    assert (await login(services, "alice", "N3w!Password")).issued is not None


async def test_change_password_requires_current_password(services, user):
    with pytest.raises(AuthError) as excinfo:
        await services.auth.change_password(user.id, "Wr0ng!Pass", "N3w!Password")
    assert excinfo.value.message == "Current password is incorrect"


async def test_change_password_enforces_policy(services, user):
    with pytest.raises(ValidationError):
        await services.auth.change_password(user.id, PASSWORD, "weak")
    with pytest.raises(ValidationError):
        await services.auth.change_password(user.id, PASSWORD, PASSWORD)


# --- Two-factor authentication ---

async def enable_totp(services, user_id: str) -> str:
    enrollment = await services.auth.setup_totp(user_id)
    code = pyotp.TOTP(enrollment.secret).at(FIXED_NOW)
    await services.auth.enable_totp(user_id, enrollment.secret, code, totp_time=FIXED_NOW)
    return enrollment.secret


async def test_setup_totp_stores_nothing(services, user):
    enrollment = await services.auth.setup_totp(user.id)
    assert enrollment.uri.startswith("otpauth://totp/")
    assert enrollment.qr_code
    assert not (await services.auth.get_user(user.id)).totp_enabled


async def test_enable_totp_requires_valid_code(services, user):
    enrollment = await services.auth.setup_totp(user.id)
    with pytest.raises(ValidationError):
        await services.auth.enable_totp(user.id, enrollment.secret, "000000",
                                        totp_time=FIXED_NOW + timedelta(hours=1))
    assert not (await services.auth.get_user(user.id)).totp_enabled


async def test_totp_secret_is_stored_sealed(services, user):
    secret = await enable_totp(services, user.id)
    stored = await services.auth.get_user(user.id)
    assert stored.totp_enabled
    assert secret not in stored.totp_secret_encrypted


async def test_login_with_totp(services, user):
    secret = await enable_totp(services, user.id)

    pending = await login(services)
    assert pending.totp_required
    assert pending.issued is None

    code = pyotp.TOTP(secret).at(FIXED_NOW + timedelta(seconds=30))
    result = await login(services, totp_code=code, totp_time=FIXED_NOW)
    assert result.issued.user.id == user.id


async def test_login_with_wrong_totp_code(services, user):
    secret = await enable_totp(services, user.id)
    stale = pyotp.TOTP(secret).at(FIXED_NOW - timedelta(minutes=5))

    with pytest.raises(AuthError) as excinfo:
        await login(services, totp_code=stale, totp_time=FIXED_NOW)
    assert excinfo.value.message == "Invalid two-factor authentication code"


async def test_setup_totp_when_already_enabled(services, user):
    await enable_totp(services, user.id)
    with pytest.raises(ValidationError):
        await services.auth.setup_totp(user.id)


async def test_disable_totp(services, user):
    await enable_totp(services, user.id)

    with pytest.raises(AuthError):
        await services.auth.disable_totp(user.id, "Wr0ng!Pass")
    assert (await services.auth.get_user(user.id)).totp_enabled

    await services.auth.disable_totp(user.id, PASSWORD)
    assert not (await services.auth.get_user(user.id)).totp_enabled
    assert not (await login(services)).totp_required


async def test_verify_totp(services, user):
    secret = await enable_totp(services, user.id)
    code = pyotp.TOTP(secret).at(FIXED_NOW)
    assert await services.auth.verify_totp(user.id, code, totp_time=FIXED_NOW)
    assert not await services.auth.verify_totp(user.id, code, totp_time=FIXED_NOW + timedelta(minutes=2))
