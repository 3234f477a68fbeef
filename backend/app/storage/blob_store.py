# backend/app/storage/blob_store.py
"""
Opaque blob store for encrypted content.

The server never looks inside a blob: it stores ciphertext produced by the
client and streams it back. Path convention:

    users/{user_id}/files/{file_id}/current        live content
    users/{user_id}/files/{file_id}/versions/{id}  historical versions
    users/{user_id}/thumbnails/{file_id}           encrypted previews
"""
import hashlib
import json
import logging
import os
import uuid
from pathlib import PurePosixPath
from typing import AsyncIterable, AsyncIterator, Dict, Iterable, Optional, Union

import anyio

from backend.app.core.exceptions import StorageError, ValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
META_SUFFIX = ".meta.json"

BlobData = Union[bytes, AsyncIterable[bytes]]


def file_path(user_id: str, file_id: str) -> str:
    return f"users/{user_id}/files/{file_id}/current"


def version_path(user_id: str, file_id: str, version_id: str) -> str:
    # Keyed by row id, not version number: two racing uploads never share a path
    return f"users/{user_id}/files/{file_id}/versions/{version_id}"


def thumbnail_path(user_id: str, file_id: str) -> str:
    return f"users/{user_id}/thumbnails/{file_id}"


async def _iter_chunks(data: BlobData) -> AsyncIterator[bytes]:
    if isinstance(data, (bytes, bytearray)):
        for start in range(0, len(data), CHUNK_SIZE):
            yield bytes(data[start:start + CHUNK_SIZE])
        return
    async for chunk in data:
        if chunk:
            yield chunk


class BlobStream:
    """Async iterator over an opened blob. Closes itself once exhausted."""

    def __init__(self, handle, size: int, chunk_size: int = CHUNK_SIZE):
        self._handle = handle
        self.size = size
        self._chunk_size = chunk_size
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._read()

    async def _read(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._handle.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def read_all(self) -> bytes:
        parts = [chunk async for chunk in self]
        return b"".join(parts)

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._handle.aclose()


class BlobStore:
    """Interface consumed by the file and share services."""

    async def put(self, path: str, data: BlobData, size: int,
                  metadata: Optional[Dict[str, str]] = None) -> str:
        raise NotImplementedError

    async def get(self, path: str) -> BlobStream:
        raise NotImplementedError

    async def delete(self, path: str) -> None:
        raise NotImplementedError

    async def delete_many(self, paths: Iterable[str]) -> None:
        for path in paths:
            await self.delete(path)

    async def stat(self, path: str) -> int:
        raise NotImplementedError

    async def exists(self, path: str) -> bool:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory on local disk."""

    def __init__(self, root: Union[str, os.PathLike]):
        self.root = anyio.Path(os.path.abspath(root))

    def _resolve(self, path: str) -> anyio.Path:
        parts = PurePosixPath(path).parts
        if not parts or path.startswith("/") or any(part in ("..", ".", "") for part in parts):
            raise StorageError("Invalid storage path", details={"path": path})
        return self.root.joinpath(*parts)

    async def put(self, path: str, data: BlobData, size: int,
                  metadata: Optional[Dict[str, str]] = None) -> str:
        target = self._resolve(path)
        partial = target.with_name(f"{target.name}.{uuid.uuid4().hex}.partial")
        digest = hashlib.md5()
        written = 0

        try:
            await target.parent.mkdir(parents=True, exist_ok=True)
            async with await anyio.open_file(partial, "wb") as handle:
                async for chunk in _iter_chunks(data):
                    digest.update(chunk)
                    written += len(chunk)
                    await handle.write(chunk)
        except OSError as e:
            await self._discard(partial)
            logger.error(f"Failed to write blob {path}: {e}")
            raise StorageError("Failed to upload file") from e

        if written != size:
            await self._discard(partial)
            raise ValidationError(
                "Uploaded content size does not match declared size",
                details={"declared": size, "received": written},
            )

        etag = digest.hexdigest()
        try:
            await partial.rename(target)
            meta = dict(metadata or {})
            meta.update({"size": str(written), "etag": etag})
            await self._meta_path(target).write_text(json.dumps(meta))
        except OSError as e:
            await self._discard(partial)
            logger.error(f"Failed to commit blob {path}: {e}")
            raise StorageError("Failed to upload file") from e

        logger.debug(f"Stored blob {path} ({written} bytes)")
        return etag

    async def get(self, path: str) -> BlobStream:
        target = self._resolve(path)
        try:
            size = (await target.stat()).st_size
            handle = await anyio.open_file(target, "rb")
        except FileNotFoundError as e:
            raise StorageError("File not found in storage", details={"path": path}) from e
        except OSError as e:
            logger.error(f"Failed to open blob {path}: {e}")
            raise StorageError("Failed to download file") from e
        return BlobStream(handle, size)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await target.unlink(missing_ok=True)
            await self._meta_path(target).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete blob {path}: {e}")
            raise StorageError("Failed to delete file") from e

    async def delete_many(self, paths: Iterable[str]) -> None:
        failed = []
        for path in paths:
            try:
                await self.delete(path)
            except StorageError:
                failed.append(path)
        if failed:
            raise StorageError("Failed to delete some files", details={"paths": failed})

    async def stat(self, path: str) -> int:
        target = self._resolve(path)
        try:
            return (await target.stat()).st_size
        except FileNotFoundError as e:
            raise StorageError("File not found in storage", details={"path": path}) from e
        except OSError as e:
            raise StorageError("Failed to stat file") from e

    async def exists(self, path: str) -> bool:
        return await self._resolve(path).is_file()

    async def metadata(self, path: str) -> Dict[str, str]:
        try:
            return json.loads(await self._meta_path(self._resolve(path)).read_text())
        except FileNotFoundError as e:
            raise StorageError("File not found in storage", details={"path": path}) from e

    @staticmethod
    def _meta_path(target: anyio.Path) -> anyio.Path:
        return target.with_name(target.name + META_SUFFIX)

    @staticmethod
    async def _discard(partial: anyio.Path) -> None:
        try:
            await partial.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial blob {partial}: {e}")
