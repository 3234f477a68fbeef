import hashlib
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.app.core import cache as cache_module
from backend.app.core.cache import MemoryCache, NullCache, RedisCache, build_cache, session_key, share_key
from backend.app.core.exceptions import StorageError, ValidationError
from backend.app.storage import blob_store
from backend.app.storage.blob_store import CHUNK_SIZE, LocalBlobStore


# --- Cache ---

def test_key_namespaces():
    assert session_key("abc") == "session:abc"
    assert share_key("tok") == "share:tok"


async def test_memory_cache_round_trip():
    cache = MemoryCache()
    await cache.set("k", {"user_id": "u1", "n": 3}, 60)
    assert await cache.get("k") == {"user_id": "u1", "n": 3}

    await cache.delete("k")
    assert await cache.get("k") is None


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def monotonic(self):
        return self.now


async def test_memory_cache_expiry(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(cache_module, "time", clock)
    cache = MemoryCache()
    await cache.set("k", {"v": 1}, 10)

    clock.now += 9
    assert await cache.get("k") == {"v": 1}
    clock.now += 2
    assert await cache.get("k") is None
    assert len(cache) == 0


async def test_memory_cache_ignores_non_positive_ttl():
    cache = MemoryCache()
    await cache.set("k", {"v": 1}, 0)
    await cache.set("j", {"v": 1}, -5)
    assert len(cache) == 0


async def test_null_cache_always_misses():
    cache = NullCache()
    await cache.set("k", {"v": 1}, 60)
    assert await cache.get("k") is None


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.data = {}
        self.expiry = {}

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)

    async def aclose(self):
        pass


async def test_redis_cache_round_trip():
    client = FakeRedis()
    cache = RedisCache(client)
    await cache.set("share:t", {"share_id": "s1"}, 120)

    assert client.expiry["share:t"] == 120
    assert json.loads(client.data["share:t"]) == {"share_id": "s1"}
    assert await cache.get("share:t") == {"share_id": "s1"}

    await cache.delete("share:t")
    assert await cache.get("share:t") is None


async def test_redis_failures_degrade_to_miss():
    cache = RedisCache(FakeRedis(fail=True))
    await cache.set("k", {"v": 1}, 60)
    await cache.delete("k")
    assert await cache.get("k") is None


async def test_redis_malformed_entry_is_a_miss():
    client = FakeRedis()
    client.data["k"] = "{not json"
    assert await RedisCache(client).get("k") is None


def test_build_cache(settings):
    settings.CACHE_BACKEND = "none"
    assert type(build_cache(settings)) is NullCache
    settings.CACHE_BACKEND = "memory"
    assert isinstance(build_cache(settings), MemoryCache)
    settings.CACHE_BACKEND = "redis"
    settings.REDIS_URL = None
    with pytest.raises(ValueError):
        build_cache(settings)


# --- Blob store ---

@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


def test_path_convention():
    assert blob_store.file_path("u", "f") == "users/u/files/f/current"
    assert blob_store.thumbnail_path("u", "f") == "users/u/thumbnails/f"
    assert blob_store.version_path("u", "f", "v").startswith("users/u/files/f/versions/")


async def test_put_get_stat(store):
    data = b"ciphertext" * 10
    etag = await store.put("users/u/files/f/current", data, len(data), {"file_id": "f"})

    assert etag == hashlib.md5(data).hexdigest()
    assert await store.exists("users/u/files/f/current")
    assert await store.stat("users/u/files/f/current") == len(data)
    stream = await store.get("users/u/files/f/current")
    assert stream.size == len(data)
    assert await stream.read_all() == data

    meta = await store.metadata("users/u/files/f/current")
    assert meta["file_id"] == "f"
    assert meta["size"] == str(len(data))
    assert meta["etag"] == etag


async def test_put_from_async_chunks(store):
    parts = [b"a" * CHUNK_SIZE, b"b" * 10, b"", b"c"]

    async def chunks():
        for part in parts:
            yield part

    size = sum(len(p) for p in parts)
    await store.put("users/u/files/f/current", chunks(), size)
    stream = await store.get("users/u/files/f/current")
    assert await stream.read_all() == b"".join(parts)


async def test_put_size_mismatch_leaves_nothing(store, tmp_path):
    with pytest.raises(ValidationError) as excinfo:
        await store.put("users/u/files/f/current", b"12345", 6)
    assert excinfo.value.details == {"declared": 6, "received": 5}
    assert not await store.exists("users/u/files/f/current")
    assert [p for p in (tmp_path / "blobs").rglob("*") if p.is_file()] == []


async def test_get_missing_blob(store):
    with pytest.raises(StorageError):
        await store.get("users/u/files/missing/current")
    with pytest.raises(StorageError):
        await store.stat("users/u/files/missing/current")


async def test_delete_is_idempotent(store):
    await store.put("users/u/thumbnails/f", b"x", 1)
    await store.delete("users/u/thumbnails/f")
    await store.delete("users/u/thumbnails/f")
    assert not await store.exists("users/u/thumbnails/f")


async def test_delete_many(store):
    paths = [f"users/u/files/f{i}/current" for i in range(3)]
    for path in paths:
        await store.put(path, b"data", 4)
    await store.delete_many(paths + ["users/u/files/never/current"])
    for path in paths:
        assert not await store.exists(path)


async def test_delete_many_reports_failures(store):
    await store.put("users/u/files/f/current", b"data", 4)
    with pytest.raises(StorageError) as excinfo:
        await store.delete_many(["users/u/files/f/current", "../escape"])
    assert excinfo.value.details == {"paths": ["../escape"]}
    assert not await store.exists("users/u/files/f/current")


@pytest.mark.parametrize("path", ["../outside", "/etc/passwd", "users/../../x", ""])
async def test_rejects_paths_outside_root(store, path):
    with pytest.raises(StorageError):
        await store.put(path, b"x", 1)


async def test_stream_closes_early(store):
    await store.put("users/u/files/f/current", b"z" * (CHUNK_SIZE * 3), CHUNK_SIZE * 3)
    stream = await store.get("users/u/files/f/current")
    await stream.aclose()
    await stream.aclose()
