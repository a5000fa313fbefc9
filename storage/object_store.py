"""
Object store gateway.

Uniform async access to the blob store holding HLS renditions. Two
backends share one interface:

- S3ObjectStore: any S3-compatible service through boto3. Blocking SDK
  calls run in worker threads.
- FilesystemObjectStore: a local or NAS directory, for development and
  single-host installs.

Every operation is idempotent per key and goes through the shared
RetryPolicy: transient failures (network errors, throttling, 5xx) are
retried with backoff, anything else fails immediately.
"""

import asyncio
import logging
import os
import re
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import boto3
import botocore.exceptions
from botocore.config import Config as BotoConfig

from config import (
    HLS_PLAYLIST_NAME,
    HLS_TEMPLATE_NAME,
    PLAYLIST_CACHE_CONTROL,
    SEGMENT_CACHE_CONTROL,
)
from core.enums import AssetCategory
from core.errors import (
    ObjectNotFoundError,
    PermanentStoreError,
    PipelineIOError,
    TransientStoreError,
)
from core.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/MP2T",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".m4v": "video/x-m4v",
    ".mkv": "video/x-matroska",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DOWNLOAD_CHUNK_SIZE = 8 * 1024 * 1024

# Keys stay readable and safe across tools, CDNs and logs
_KEY_ALLOWED_RE = re.compile(r"[A-Za-z0-9._\-/+=@()]+")

# S3 error codes that are worth retrying
_TRANSIENT_ERROR_CODES = frozenset(
    [
        "Throttling",
        "ThrottlingException",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeoutException",
        "InternalError",
        "ServiceUnavailable",
        "503",
        "500",
    ]
)
_NOT_FOUND_ERROR_CODES = frozenset(["404", "NoSuchKey", "NotFound"])


def normalize_key(key: str) -> str:
    """
    Normalize and validate an object key.

    Strips whitespace and the leading '/', collapses '//' runs, and rejects
    path traversal and characters outside the allowed set. A trailing '/'
    (prefix) is preserved.
    """
    k = str(key or "").strip().lstrip("/")
    k = re.sub(r"/{2,}", "/", k)
    if not k:
        raise PermanentStoreError("Invalid storage key: empty")
    if ".." in k.split("/"):
        raise PermanentStoreError("Invalid storage key: path traversal detected")
    if not _KEY_ALLOWED_RE.fullmatch(k):
        raise PermanentStoreError(f"Invalid storage key: contains forbidden characters: {k!r}")
    return k


def content_type_for(key: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(key)[1].lower(), DEFAULT_CONTENT_TYPE)


def cache_control_for(key: str) -> Optional[str]:
    """Segments are immutable; playlists change on every refresh."""
    ext = os.path.splitext(key)[1].lower()
    if ext == ".ts":
        return SEGMENT_CACHE_CONTROL
    if ext == ".m3u8":
        return PLAYLIST_CACHE_CONTROL
    return None


def asset_prefix(category: AssetCategory, asset_id: str) -> str:
    return f"{AssetCategory(category).value}/{asset_id}/"


def playlist_key_for(prefix: str) -> str:
    return f"{prefix}{HLS_PLAYLIST_NAME}"


def template_key_for(prefix: str) -> str:
    return f"{prefix}{HLS_TEMPLATE_NAME}"


def prefix_of(key: str) -> str:
    """Directory-style prefix of a key, including the trailing '/'."""
    return key.rsplit("/", 1)[0] + "/" if "/" in key else ""


class ObjectStore(ABC):
    """Abstract async blob store."""

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy.from_config()

    @abstractmethod
    async def put_object(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
    ) -> None:
        """Write (or overwrite) an object."""

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        """Read an object. Raises ObjectNotFoundError if it does not exist."""

    @abstractmethod
    async def object_size(self, key: str) -> int:
        """Size of an object in bytes, without reading it. Raises ObjectNotFoundError."""

    @abstractmethod
    async def download_file(self, key: str, path: Path) -> None:
        """Stream an object to a local file. Raises ObjectNotFoundError."""

    @abstractmethod
    async def list_by_prefix(self, prefix: str) -> List[str]:
        """Return all keys under prefix, sorted."""

    @abstractmethod
    async def copy_object(
        self,
        source_key: str,
        dest_key: str,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
    ) -> None:
        """Server-side copy, overwriting dest_key."""

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""

    async def put_file(self, key: str, path: Path) -> None:
        """Upload a local file with content type and cache headers derived from the key."""
        try:
            data = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as e:
            raise PipelineIOError(f"Cannot read {Path(path).name} for upload: {e}") from e
        await self.put_object(key, data, content_type_for(key), cache_control_for(key))

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix. Returns the number of keys removed."""
        keys = await self.list_by_prefix(prefix)
        for key in keys:
            await self.delete_object(key)
        return len(keys)

    async def _retrying(self, description: str, func: Callable, *args, **kwargs):
        return await execute_with_retry(
            func,
            *args,
            policy=self.policy,
            is_retryable=lambda e: isinstance(e, TransientStoreError),
            exhausted_error=TransientStoreError,
            description=description,
            **kwargs,
        )


class S3ObjectStore(ObjectStore):
    """
    S3-compatible store backed by boto3.

    botocore's own retries are disabled so the shared RetryPolicy is the
    only retry layer. Credentials come from explicit arguments or the
    standard AWS chain (env, profile, instance role).
    """

    def __init__(
        self,
        bucket: str,
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        connect_timeout: int = 3,
        read_timeout: int = 30,
        client=None,
        policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(policy)
        if not bucket:
            raise PermanentStoreError("S3 bucket is not configured (VODPIPE_S3_BUCKET)")
        self.bucket = bucket

        if client is None:
            cfg = BotoConfig(
                signature_version="s3v4",
                retries={"total_max_attempts": 1, "mode": "standard"},
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
            )
            client_kwargs: Dict[str, Any] = {"config": cfg}
            if region_name:
                client_kwargs["region_name"] = region_name
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            if access_key_id and secret_access_key:
                client_kwargs["aws_access_key_id"] = access_key_id
                client_kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.client("s3", **client_kwargs)
        self.client = client

    def __repr__(self) -> str:
        return f"S3ObjectStore(bucket={self.bucket})"

    @staticmethod
    def _translate(exc: Exception, key: str) -> Exception:
        """Map a botocore exception onto the store error taxonomy."""
        if isinstance(exc, botocore.exceptions.ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
            if code in _NOT_FOUND_ERROR_CODES:
                return ObjectNotFoundError(key)
            if code in _TRANSIENT_ERROR_CODES or status >= 500 or status == 429:
                return TransientStoreError(f"S3 {code or status} for {key}: {error.get('Message', '')}")
            return PermanentStoreError(f"S3 {code or status} for {key}: {error.get('Message', '')}")
        if isinstance(exc, (botocore.exceptions.ConnectionError, botocore.exceptions.HTTPClientError)):
            return TransientStoreError(f"S3 connection error for {key}: {exc}")
        if isinstance(exc, botocore.exceptions.NoCredentialsError):
            return PermanentStoreError(f"S3 credentials are not configured: {exc}")
        return PermanentStoreError(f"S3 error for {key}: {exc}")

    async def _call(self, description: str, key: str, method: str, **params):
        async def attempt():
            try:
                return await asyncio.to_thread(getattr(self.client, method), **params)
            except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
                raise self._translate(e, key) from e

        return await self._retrying(description, attempt)

    async def put_object(self, key, data, content_type=None, cache_control=None) -> None:
        k = normalize_key(key)
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": k,
            "Body": data,
            "ContentType": content_type or content_type_for(k),
        }
        cache_control = cache_control or cache_control_for(k)
        if cache_control:
            params["CacheControl"] = cache_control
        await self._call(f"S3 put {k}", k, "put_object", **params)

    async def get_object(self, key: str) -> bytes:
        k = normalize_key(key)

        async def attempt():
            try:
                return await asyncio.to_thread(self._read_body, k)
            except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
                raise self._translate(e, k) from e

        return await self._retrying(f"S3 get {k}", attempt)

    def _read_body(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    async def object_size(self, key: str) -> int:
        k = normalize_key(key)
        response = await self._call(f"S3 head {k}", k, "head_object", Bucket=self.bucket, Key=k)
        return int(response["ContentLength"])

    async def download_file(self, key: str, path: Path) -> None:
        k = normalize_key(key)

        async def attempt():
            try:
                return await asyncio.to_thread(self._stream_body, k, Path(path))
            except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
                raise self._translate(e, k) from e
            except OSError as e:
                raise PipelineIOError(f"Cannot write {Path(path).name}: {e}") from e

        await self._retrying(f"S3 download {k}", attempt)

    def _stream_body(self, key: str, path: Path) -> None:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        body = response["Body"]
        try:
            with open(path, "wb") as f:
                for chunk in iter(lambda: body.read(DOWNLOAD_CHUNK_SIZE), b""):
                    f.write(chunk)
        finally:
            body.close()

    async def list_by_prefix(self, prefix: str) -> List[str]:
        p = normalize_key(prefix)

        async def attempt():
            try:
                return await asyncio.to_thread(self._list_keys, p)
            except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
                raise self._translate(e, p) from e

        return await self._retrying(f"S3 list {p}", attempt)

    def _list_keys(self, prefix: str) -> List[str]:
        keys = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                keys.append(item["Key"])
        return sorted(keys)

    async def copy_object(self, source_key, dest_key, content_type=None, cache_control=None) -> None:
        src = normalize_key(source_key)
        dst = normalize_key(dest_key)
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": dst,
            "CopySource": {"Bucket": self.bucket, "Key": src},
            "MetadataDirective": "REPLACE",
            "ContentType": content_type or content_type_for(dst),
        }
        cache_control = cache_control or cache_control_for(dst)
        if cache_control:
            params["CacheControl"] = cache_control
        await self._call(f"S3 copy {src} -> {dst}", src, "copy_object", **params)

    async def delete_object(self, key: str) -> None:
        k = normalize_key(key)
        try:
            await self._call(f"S3 delete {k}", k, "delete_object", Bucket=self.bucket, Key=k)
        except ObjectNotFoundError:
            pass


class FilesystemObjectStore(ObjectStore):
    """
    Directory-backed store. Writes go to a temp file and are renamed into
    place so readers never see a partial object.
    """

    def __init__(self, root, policy: Optional[RetryPolicy] = None):
        super().__init__(policy)
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"FilesystemObjectStore(root={self.root})"

    def _path(self, key: str) -> Path:
        return self.root / normalize_key(key)

    @staticmethod
    def _translate(exc: OSError, key: str) -> Exception:
        if isinstance(exc, FileNotFoundError):
            return ObjectNotFoundError(key)
        if isinstance(exc, (PermissionError, IsADirectoryError, NotADirectoryError)):
            return PermanentStoreError(f"Storage error for {key}: {exc}")
        # Remaining OSErrors are typically NAS or disk hiccups
        return TransientStoreError(f"Storage error for {key}: {exc}")

    async def _call(self, description: str, key: str, func: Callable, *args):
        async def attempt():
            try:
                return await asyncio.to_thread(func, *args)
            except OSError as e:
                raise self._translate(e, key) from e

        return await self._retrying(description, attempt)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def put_object(self, key, data, content_type=None, cache_control=None) -> None:
        path = self._path(key)
        await self._call(f"Write {key}", key, self._atomic_write, path, bytes(data))

    async def get_object(self, key: str) -> bytes:
        path = self._path(key)
        return await self._call(f"Read {key}", key, path.read_bytes)

    async def object_size(self, key: str) -> int:
        path = self._path(key)
        stat = await self._call(f"Stat {key}", key, path.stat)
        return stat.st_size

    async def download_file(self, key: str, path: Path) -> None:
        await self._call(f"Download {key}", key, shutil.copyfile, self._path(key), Path(path))

    def _list_keys(self, prefix: str) -> List[str]:
        # Walk only the deepest directory implied by the prefix
        base = self.root / prefix_of(prefix) if "/" in prefix else self.root
        if not base.is_dir():
            return []
        keys = []
        for path in base.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def list_by_prefix(self, prefix: str) -> List[str]:
        p = normalize_key(prefix)
        return await self._call(f"List {p}", p, self._list_keys, p)

    def _copy(self, src: Path, dst: Path) -> None:
        data = src.read_bytes()
        self._atomic_write(dst, data)

    async def copy_object(self, source_key, dest_key, content_type=None, cache_control=None) -> None:
        await self._call(
            f"Copy {source_key} -> {dest_key}",
            source_key,
            self._copy,
            self._path(source_key),
            self._path(dest_key),
        )

    def _unlink(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        # Prune directories emptied by the delete, never the root itself
        parent = path.parent
        while parent != self.root and self.root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    async def delete_object(self, key: str) -> None:
        await self._call(f"Delete {key}", key, self._unlink, self._path(key))


def create_object_store():
    """Build the configured object store backend."""
    from config import (
        FILESYSTEM_STORAGE_ROOT,
        S3_ACCESS_KEY_ID,
        S3_BUCKET,
        S3_CONNECT_TIMEOUT,
        S3_ENDPOINT_URL,
        S3_READ_TIMEOUT,
        S3_REGION,
        S3_SECRET_ACCESS_KEY,
        STORAGE_BACKEND,
    )

    if STORAGE_BACKEND == "filesystem":
        return FilesystemObjectStore(FILESYSTEM_STORAGE_ROOT)
    if STORAGE_BACKEND != "s3":
        raise ValueError(f"Unknown storage backend: {STORAGE_BACKEND}")
    return S3ObjectStore(
        S3_BUCKET,
        region_name=S3_REGION,
        endpoint_url=S3_ENDPOINT_URL,
        access_key_id=S3_ACCESS_KEY_ID,
        secret_access_key=S3_SECRET_ACCESS_KEY,
        connect_timeout=S3_CONNECT_TIMEOUT,
        read_timeout=S3_READ_TIMEOUT,
    )
