# backend/app/core/cache.py
"""
Cache accelerator for session and share lookups.

Strictly advisory: every backend failure is logged and treated as a miss,
and no caller's correctness depends on an entry being present or fresh.
Values are JSON documents. Keys are namespaced by entity:

    session:{session_id}
    share:{share_token}
"""
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def share_key(share_token: str) -> str:
    return f"share:{share_token}"


class Cache:
    """Interface. The base class is the disabled cache: always a miss."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return None

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def close(self) -> None:
        return None


NullCache = Cache


class MemoryCache(Cache):
    """
    In-process cache. Only correct with a single worker process: another
    worker would never see this one's invalidations.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return json.loads(payload)

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        if ttl <= 0:
            return
        self._entries[key] = (time.monotonic() + ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(Cache):
    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=True, socket_timeout=1.0))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            payload = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except ValueError:
            logger.warning(f"Discarding malformed cache entry {key}")
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def close(self) -> None:
        await self.client.aclose()


def build_cache(settings: Settings) -> Cache:
    backend = settings.CACHE_BACKEND.lower()
    if backend == "redis":
        if not settings.REDIS_URL:
            raise ValueError("CACHE_BACKEND=redis requires REDIS_URL")
        logger.info("Using Redis cache accelerator")
        return RedisCache.from_url(settings.REDIS_URL)
    if backend == "memory":
        logger.info("Using in-process cache accelerator")
        return MemoryCache()
    return NullCache()
