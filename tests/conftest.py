import pytest
from argon2 import PasswordHasher

from backend.app.api.rate_limit import limiter
from backend.app.core.cache import MemoryCache
from backend.app.core.config import Settings
from backend.app.db.session import Database, create_engine_from_settings
from backend.app.security import passwords
from backend.app.services import build_services
from backend.app.storage.blob_store import LocalBlobStore

from tests.factories import QUOTA, registration


@pytest.fixture(autouse=True)
def fast_password_hasher(monkeypatch):
    # Production parameters cost ~100ms per hash
    monkeypatch.setattr(passwords, "ph", PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.enabled = True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ENVIRONMENT="test",
        SECRET_KEY="test-secret-key-0123456789abcdef0123456789abcdef",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        BLOB_STORAGE_ROOT=str(tmp_path / "blobs"),
        CACHE_BACKEND="memory",
        DEFAULT_STORAGE_QUOTA=QUOTA,
        CORS_ORIGINS="",
        TOTP_ENCRYPTION_KEY=None,
    )


@pytest.fixture
async def database(settings):
    db = Database(create_engine_from_settings(settings))
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def blobs(settings):
    return LocalBlobStore(settings.BLOB_STORAGE_ROOT)


@pytest.fixture
def services(settings, database, cache, blobs):
    return build_services(settings, database, cache, blobs)


@pytest.fixture
async def user(services):
    issued = await services.auth.register(registration("alice"))
    return issued.user


@pytest.fixture
async def other_user(services):
    issued = await services.auth.register(registration("bob"))
    return issued.user
