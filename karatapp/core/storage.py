"""Bucket-style object storage.

Objects live in named buckets under slash-separated paths. Two backends are
provided: ``LocalObjectStore`` keeps objects on the filesystem under a root
directory, ``MemoryObjectStore`` keeps them in a dict (tests, ephemeral runs).

URLs handed to callers follow one layout so that services can recover the
bucket and the object path from a stored URL:

    {base}/storage/v1/object/public/{bucket}/{path}
    {base}/storage/v1/object/sign/{bucket}/{path}?token=...&expires=...

Signed URLs carry an HMAC-SHA256 over ``bucket/path:expires``.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import mimetypes
import shutil
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote, unquote, urlencode, urlparse

from ..models.models import utcnow
from .errors import InvalidInputError, StorageError
from .metrics import STORAGE_OPERATIONS

if TYPE_CHECKING:
    from .config import StorageConfig

log = logging.getLogger("storage")

URL_PREFIX = "/storage/v1/object"


@dataclass(slots=True, frozen=True)
class StoredObject:
    """One entry of a bucket listing.

    Attributes:
        name: file name relative to the listed folder.
        size: size in bytes.
        updated_at: last modification time (UTC).
        content_type: MIME type if known.
    """

    name: str
    size: int
    updated_at: datetime
    content_type: str | None = None


class ObjectStore(Protocol):
    """Object storage protocol."""

    async def bucket_exists(self, bucket: str) -> bool: ...

    async def create_bucket(self, bucket: str) -> None: ...

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> str:
        """Store ``data`` and return the object path."""
        ...

    async def list(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        """List the files directly inside the folder ``prefix``."""
        ...

    async def remove(self, bucket: str, paths: list[str]) -> list[str]:
        """Remove objects and return the paths that existed."""
        ...

    async def download(self, bucket: str, path: str) -> bytes: ...

    async def remove_folder(self, bucket: str, folder: str) -> bool:
        """Remove every object under ``folder``. Returns False when nothing was there."""
        ...

    def public_url(self, bucket: str, path: str) -> str: ...

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str: ...

    def verify_signed_url(self, bucket: str, path: str, token: str, expires: int) -> bool: ...


def normalize_path(path: str) -> str:
    """Validate an object path and return it without leading/trailing slashes."""
    cleaned = path.strip().strip("/")
    if not cleaned:
        raise InvalidInputError("Object path must not be empty")
    parts = PurePosixPath(cleaned).parts
    if any(part in ("..", ".") for part in parts) or "\\" in cleaned:
        raise InvalidInputError(f"Invalid object path: {path}")
    return "/".join(parts)


def _url_segments(url: str) -> list[str]:
    return [unquote(seg) for seg in urlparse(url).path.split("/") if seg]


def _object_segments(url: str) -> list[str] | None:
    """Segments after ``URL_PREFIX/{public|sign}``: bucket first, then the object path."""
    segments = _url_segments(url)
    prefix = URL_PREFIX.strip("/").split("/")
    for i in range(len(segments) - len(prefix)):
        if segments[i : i + len(prefix)] == prefix and segments[i + len(prefix)] in ("public", "sign"):
            return segments[i + len(prefix) + 1 :]
    return None


def bucket_from_url(url: str) -> str | None:
    """Return the bucket of a storage URL (the segment after public/sign)."""
    rest = _object_segments(url)
    return rest[0] if rest else None


def path_from_url(url: str) -> str | None:
    """Return the object path of a storage URL (the segments after the bucket)."""
    rest = _object_segments(url)
    if not rest or len(rest) < 2:
        return None
    return "/".join(rest[1:])


def file_name_from_url(url: str) -> str:
    segments = _url_segments(url)
    return segments[-1] if segments else ""


class _UrlSigningStore:
    """URL building and signing shared by the backends."""

    def __init__(self, public_base_url: str, signing_secret: str) -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")

    def _sign(self, bucket: str, path: str, expires: int) -> str:
        message = f"{bucket}/{path}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _object_url(self, kind: str, bucket: str, path: str) -> str:
        return f"{self.public_base_url}{URL_PREFIX}/{kind}/{quote(bucket)}/{quote(path)}"

    def public_url(self, bucket: str, path: str) -> str:
        return self._object_url("public", bucket, normalize_path(path))

    def signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        path = normalize_path(path)
        expires = int(time.time()) + int(expires_in)
        query = urlencode({"token": self._sign(bucket, path, expires), "expires": expires})
        return f"{self._object_url('sign', bucket, path)}?{query}"

    def verify_signed_url(self, bucket: str, path: str, token: str, expires: int) -> bool:
        if expires < int(time.time()):
            return False
        expected = self._sign(bucket, normalize_path(path), int(expires))
        return hmac.compare_digest(expected, token)


def _guess_type(path: str) -> str | None:
    return mimetypes.guess_type(path)[0]


class LocalObjectStore(_UrlSigningStore):
    """Filesystem-backed store: ``{root_dir}/{bucket}/{path}``.

    Blocking file I/O runs through ``asyncio.to_thread``.
    """

    def __init__(self, root_dir: Path, *, public_base_url: str, signing_secret: str) -> None:
        super().__init__(public_base_url, signing_secret)
        self.root_dir = Path(root_dir)

    def _bucket_dir(self, bucket: str) -> Path:
        if not bucket or "/" in bucket or bucket in (".", ".."):
            raise InvalidInputError(f"Invalid bucket name: {bucket}")
        return self.root_dir / bucket

    def _require_bucket(self, bucket: str) -> Path:
        bucket_dir = self._bucket_dir(bucket)
        if not bucket_dir.is_dir():
            raise StorageError(f"Bucket not found: {bucket}", status_code=404)
        return bucket_dir

    async def bucket_exists(self, bucket: str) -> bool:
        return await asyncio.to_thread(self._bucket_dir(bucket).is_dir)

    async def create_bucket(self, bucket: str) -> None:
        await asyncio.to_thread(self._bucket_dir(bucket).mkdir, parents=True, exist_ok=True)

    def _write(self, bucket: str, path: str, data: bytes, upsert: bool) -> None:
        target = self._require_bucket(bucket) / path
        if target.exists() and not upsert:
            raise StorageError(f"The resource already exists: {bucket}/{path}", status_code=409)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> str:
        path = normalize_path(path)
        try:
            await asyncio.to_thread(self._write, bucket, path, data, upsert)
        except StorageError:
            STORAGE_OPERATIONS.labels(operation="upload", bucket=bucket, status="error").inc()
            raise
        except OSError as e:
            STORAGE_OPERATIONS.labels(operation="upload", bucket=bucket, status="error").inc()
            raise StorageError(f"Upload failed: {e}") from e
        STORAGE_OPERATIONS.labels(operation="upload", bucket=bucket, status="success").inc()
        log.debug("Uploaded %s/%s (%d bytes)", bucket, path, len(data))
        return path

    def _scan(self, bucket: str, prefix: str) -> list[StoredObject]:
        folder = self._require_bucket(bucket)
        if prefix.strip("/"):
            folder = folder / normalize_path(prefix)
        if not folder.is_dir():
            return []
        objects = []
        for entry in folder.iterdir():
            if not entry.is_file():
                continue
            stat = entry.stat()
            objects.append(
                StoredObject(
                    name=entry.name,
                    size=stat.st_size,
                    updated_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                    content_type=_guess_type(entry.name),
                )
            )
        return sorted(objects, key=lambda o: o.name)

    async def list(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        objects = await asyncio.to_thread(self._scan, bucket, prefix)
        STORAGE_OPERATIONS.labels(operation="list", bucket=bucket, status="success").inc()
        return objects

    def _unlink(self, bucket: str, paths: list[str]) -> list[str]:
        bucket_dir = self._require_bucket(bucket)
        removed = []
        for path in paths:
            target = bucket_dir / normalize_path(path)
            if target.is_file():
                target.unlink()
                removed.append(path)
                parent = target.parent
                if parent != bucket_dir and not any(parent.iterdir()):
                    parent.rmdir()
        return removed

    async def remove(self, bucket: str, paths: list[str]) -> list[str]:
        if not paths:
            return []
        try:
            removed = await asyncio.to_thread(self._unlink, bucket, paths)
        except OSError as e:
            STORAGE_OPERATIONS.labels(operation="remove", bucket=bucket, status="error").inc()
            raise StorageError(f"Delete failed: {e}") from e
        STORAGE_OPERATIONS.labels(operation="remove", bucket=bucket, status="success").inc()
        return removed

    def _read(self, bucket: str, path: str) -> bytes:
        target = self._require_bucket(bucket) / path
        if not target.is_file():
            raise StorageError(f"Object not found: {bucket}/{path}", status_code=404)
        return target.read_bytes()

    async def download(self, bucket: str, path: str) -> bytes:
        return await asyncio.to_thread(self._read, bucket, normalize_path(path))

    def _exists(self, bucket: str, path: str) -> bool:
        return (self._require_bucket(bucket) / path).is_file()

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        path = normalize_path(path)
        if not await asyncio.to_thread(self._exists, bucket, path):
            raise StorageError(f"Object not found: {bucket}/{path}", status_code=404)
        return self.signed_url(bucket, path, expires_in)

    async def remove_folder(self, bucket: str, folder: str) -> bool:
        """Remove a whole folder tree. Returns False when it did not exist."""
        target = self._require_bucket(bucket) / normalize_path(folder)
        if not target.is_dir():
            return False
        await asyncio.to_thread(shutil.rmtree, target)
        return True


@dataclass(slots=True)
class _MemoryObject:
    data: bytes
    content_type: str | None
    updated_at: datetime


class MemoryObjectStore(_UrlSigningStore):
    """In-process store used for tests and throwaway runs."""

    def __init__(
        self,
        *,
        public_base_url: str = "http://localhost:8080",
        signing_secret: str = "memory",
        buckets: list[str] | None = None,
    ) -> None:
        super().__init__(public_base_url, signing_secret)
        self._buckets: dict[str, dict[str, _MemoryObject]] = {b: {} for b in buckets or []}

    def _require_bucket(self, bucket: str) -> dict[str, _MemoryObject]:
        try:
            return self._buckets[bucket]
        except KeyError:
            raise StorageError(f"Bucket not found: {bucket}", status_code=404) from None

    async def bucket_exists(self, bucket: str) -> bool:
        return bucket in self._buckets

    async def create_bucket(self, bucket: str) -> None:
        self._buckets.setdefault(bucket, {})

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> str:
        path = normalize_path(path)
        objects = self._require_bucket(bucket)
        if path in objects and not upsert:
            raise StorageError(f"The resource already exists: {bucket}/{path}", status_code=409)
        objects[path] = _MemoryObject(bytes(data), content_type or _guess_type(path), utcnow())
        STORAGE_OPERATIONS.labels(operation="upload", bucket=bucket, status="success").inc()
        return path

    async def list(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        objects = self._require_bucket(bucket)
        folder = prefix.strip("/")
        result = []
        for path, obj in objects.items():
            parent, _, name = path.rpartition("/")
            if parent != folder:
                continue
            result.append(
                StoredObject(name=name, size=len(obj.data), updated_at=obj.updated_at, content_type=obj.content_type)
            )
        STORAGE_OPERATIONS.labels(operation="list", bucket=bucket, status="success").inc()
        return sorted(result, key=lambda o: o.name)

    async def remove(self, bucket: str, paths: list[str]) -> list[str]:
        objects = self._require_bucket(bucket)
        removed = []
        for path in paths:
            if objects.pop(normalize_path(path), None) is not None:
                removed.append(path)
        STORAGE_OPERATIONS.labels(operation="remove", bucket=bucket, status="success").inc()
        return removed

    async def download(self, bucket: str, path: str) -> bytes:
        obj = self._require_bucket(bucket).get(normalize_path(path))
        if obj is None:
            raise StorageError(f"Object not found: {bucket}/{path}", status_code=404)
        return obj.data

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        path = normalize_path(path)
        if path not in self._require_bucket(bucket):
            raise StorageError(f"Object not found: {bucket}/{path}", status_code=404)
        return self.signed_url(bucket, path, expires_in)

    async def remove_folder(self, bucket: str, folder: str) -> bool:
        objects = self._require_bucket(bucket)
        prefix = normalize_path(folder) + "/"
        doomed = [p for p in objects if p.startswith(prefix)]
        for path in doomed:
            del objects[path]
        return bool(doomed)


def create_object_store(storage: StorageConfig) -> LocalObjectStore | MemoryObjectStore:
    if storage.backend == "memory":
        return MemoryObjectStore(public_base_url=storage.public_base_url, signing_secret=storage.signing_secret)
    return LocalObjectStore(
        storage.root_dir,
        public_base_url=storage.public_base_url,
        signing_secret=storage.signing_secret,
    )
