"""Storage backends for published streams and uploaded sources.

Supports: local filesystem, a mounted network share (NFS), and S3/MinIO.
Callers address content by hierarchical key and never branch on backend type.
"""

import asyncio
import errno
import mimetypes
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from vodpipeline.core.config import Settings

PutData = Union[bytes, bytearray, memoryview, BinaryIO]
TreeData = Mapping[str, Union[bytes, "os.PathLike[str]"]]

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".mp4": "video/mp4",
    ".m4s": "video/iso.segment",
}

_CAPACITY_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EFBIG}
_S3_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_S3_CAPACITY_CODES = {"QuotaExceeded", "EntityTooLarge", "XMinioStorageFull", "InsufficientStorage"}


class StorageError(Exception):
    """Base exception for storage errors."""

    def __init__(self, key: str, message: Optional[str] = None):
        self.key = key
        super().__init__(message or key)


class StorageNotFound(StorageError):
    """The key does not exist."""


class StorageIOFailure(StorageError):
    """Transient I/O failure; the caller may retry."""


class StorageCapacityExceeded(StorageError):
    """The target is out of space or quota; retrying will not help."""


def normalize_key(key: str) -> str:
    """Normalize a storage key to a relative ``/``-separated path.

    Raises:
        ValueError: If the key is empty, absolute, or escapes the root.
    """
    if not key or key.startswith("/") or "\\" in key:
        raise ValueError(f"Invalid storage key: {key!r}")
    parts = [part for part in key.split("/") if part not in ("", ".")]
    if not parts or ".." in parts:
        raise ValueError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


def join_key(*parts: str) -> str:
    return normalize_key("/".join(part.strip("/") for part in parts if part))


def guess_content_type(key: str) -> str:
    suffix = Path(key).suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    return mimetypes.guess_type(key)[0] or "application/octet-stream"


def _is_bytes(data: object) -> bool:
    return isinstance(data, (bytes, bytearray, memoryview))


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    def __init__(
        self,
        public_base_url: str = "",
        cdn_domain: Optional[str] = None,
        cdn_enabled: bool = False,
    ):
        self.public_base_url = public_base_url.rstrip("/")
        self.cdn_domain = cdn_domain
        self.cdn_enabled = cdn_enabled

    @abstractmethod
    def put(self, key: str, data: PutData, content_type: Optional[str] = None) -> str:
        """Store a blob and return its backend location."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read a blob."""

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """List keys at or below a prefix, sorted."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a blob."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether a blob exists."""

    @abstractmethod
    def download(self, key: str, destination: str) -> None:
        """Copy a blob to a local file without buffering it in memory."""

    @abstractmethod
    def location(self, key: str) -> str:
        """Backend-native location of a key (path or URI)."""

    def put_tree(self, root_key: str, files: TreeData) -> str:
        """Store a directory tree under ``root_key``.

        Values are either the file contents or the path of a local file to
        stream from. Returns the location of the tree root.
        """
        root = normalize_key(root_key)
        for relative_path in sorted(files):
            key = join_key(root, relative_path)
            value = files[relative_path]
            if _is_bytes(value):
                self.put(key, value)
            else:
                with translate_os_errors(key):
                    handle = open(value, "rb")
                with handle:
                    self.put(key, handle)
        return self.location(root)

    def public_url(self, key: str) -> str:
        """URL the delivery layer serves a key from."""
        key = normalize_key(key)
        if self.cdn_enabled and self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return f"{self.public_base_url}/{key}"


@contextmanager
def translate_os_errors(key: str) -> Iterator[None]:
    try:
        yield
    except StorageError:
        raise
    except FileNotFoundError as e:
        raise StorageNotFound(key, f"{key}: {e.strerror or e}") from e
    except OSError as e:
        if e.errno in _CAPACITY_ERRNOS:
            raise StorageCapacityExceeded(key, f"{key}: {e.strerror or e}") from e
        raise StorageIOFailure(key, f"{key}: {e.strerror or e}") from e


class LocalStorage(StorageBackend):
    """Local filesystem storage backend.

    Writes go to a temporary file in the destination directory and are renamed
    into place, so a reader never observes a partially written file.
    """

    fsync_writes = False

    def __init__(self, root: str, **kwargs):
        super().__init__(**kwargs)
        self.base_path = Path(root)
        self._ensure_available()
        with translate_os_errors(str(self.base_path)):
            self.base_path.mkdir(parents=True, exist_ok=True)

    def _ensure_available(self) -> None:
        """Hook for backends that depend on an external mount."""

    def _full_path(self, key: str) -> Path:
        return self.base_path / normalize_key(key)

    def location(self, key: str) -> str:
        return str(self._full_path(key))

    def put(self, key: str, data: PutData, content_type: Optional[str] = None) -> str:
        self._ensure_available()
        dest = self._full_path(key)
        with translate_os_errors(key):
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    if _is_bytes(data):
                        f.write(data)
                    else:
                        shutil.copyfileobj(data, f)
                    if self.fsync_writes:
                        f.flush()
                        os.fsync(f.fileno())
                os.replace(tmp_path, dest)
            except BaseException:
                with suppress(FileNotFoundError):
                    os.unlink(tmp_path)
                raise
        return str(dest)

    def get(self, key: str) -> bytes:
        self._ensure_available()
        path = self._full_path(key)
        with translate_os_errors(key):
            if not path.is_file():
                raise StorageNotFound(key)
            return path.read_bytes()

    def list(self, prefix: str = "") -> list[str]:
        self._ensure_available()
        search_path = self._full_path(prefix) if prefix else self.base_path
        with translate_os_errors(prefix):
            if search_path.is_file():
                return [normalize_key(prefix)]
            if not search_path.is_dir():
                return []
            keys = [
                path.relative_to(self.base_path).as_posix()
                for path in search_path.rglob("*")
                if path.is_file() and not _is_temp_file(path)
            ]
        return sorted(keys)

    def delete(self, key: str) -> None:
        self._ensure_available()
        path = self._full_path(key)
        with translate_os_errors(key):
            if not path.is_file():
                raise StorageNotFound(key)
            path.unlink()

    def exists(self, key: str) -> bool:
        self._ensure_available()
        return self._full_path(key).is_file()

    def download(self, key: str, destination: str) -> None:
        self._ensure_available()
        path = self._full_path(key)
        with translate_os_errors(key):
            if not path.is_file():
                raise StorageNotFound(key)
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, destination)


def _is_temp_file(path: Path) -> bool:
    return path.name.startswith(".") and path.name.endswith(".tmp")


class NFSStorage(LocalStorage):
    """Storage on a mounted network share.

    Refuses to operate when the mount point is missing, which would otherwise
    silently write into the local directory underneath it.
    """

    fsync_writes = True

    def __init__(self, mount_point: str, **kwargs):
        self.mount_point = Path(mount_point)
        super().__init__(mount_point, **kwargs)

    def _ensure_available(self) -> None:
        if not self.mount_point.is_dir():
            raise StorageIOFailure(
                str(self.mount_point),
                f"Network storage is not mounted at {self.mount_point}",
            )


class S3Storage(StorageBackend):
    """S3-compatible storage backend (AWS S3, MinIO, etc.)."""

    def __init__(
        self,
        bucket: str,
        region: str = "",
        access_key: str = "",
        secret_key: str = "",
        endpoint_url: Optional[str] = None,
        use_ssl: bool = True,
        client=None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.bucket = bucket
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint_url = endpoint_url
        self.use_ssl = use_ssl
        self._client = client

    def _get_client(self):
        """Get or create the S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "config": BotoConfig(
                    signature_version="s3v4",
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
                "use_ssl": self.use_ssl,
            }
            if self.region:
                client_kwargs["region_name"] = self.region
            if self.access_key and self.secret_key:
                client_kwargs["aws_access_key_id"] = self.access_key
                client_kwargs["aws_secret_access_key"] = self.secret_key
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url
            self._client = boto3.client(**client_kwargs)
        return self._client

    @contextmanager
    def _translate_errors(self, key: str) -> Iterator[None]:
        try:
            yield
        except ClientError as e:
            error = e.response.get("Error", {})
            code = str(error.get("Code", ""))
            message = f"{key}: {code} {error.get('Message', '')}".strip()
            if code in _S3_NOT_FOUND_CODES:
                raise StorageNotFound(key, message) from e
            if code in _S3_CAPACITY_CODES:
                raise StorageCapacityExceeded(key, message) from e
            raise StorageIOFailure(key, message) from e
        except (BotoCoreError, S3UploadFailedError) as e:
            raise StorageIOFailure(key, f"{key}: {e}") from e
        except OSError as e:
            # local side of download_file / upload_fileobj
            with translate_os_errors(key):
                raise e

    def location(self, key: str) -> str:
        return f"s3://{self.bucket}/{normalize_key(key)}"

    def put(self, key: str, data: PutData, content_type: Optional[str] = None) -> str:
        key = normalize_key(key)
        content_type = content_type or guess_content_type(key)
        with self._translate_errors(key):
            if _is_bytes(data):
                self._get_client().put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=bytes(data),
                    ContentType=content_type,
                )
            else:
                self._get_client().upload_fileobj(
                    data,
                    self.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type},
                )
        return self.location(key)

    def get(self, key: str) -> bytes:
        key = normalize_key(key)
        with self._translate_errors(key):
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

    def list(self, prefix: str = "") -> list[str]:
        list_prefix = f"{normalize_key(prefix)}/" if prefix else ""
        keys: list[str] = []
        with self._translate_errors(prefix):
            if prefix and self.exists(prefix):
                keys.append(normalize_key(prefix))
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return sorted(keys)

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        with self._translate_errors(key):
            # delete_object succeeds for missing keys
            self._get_client().head_object(Bucket=self.bucket, Key=key)
            self._get_client().delete_object(Bucket=self.bucket, Key=key)

    def exists(self, key: str) -> bool:
        key = normalize_key(key)
        try:
            with self._translate_errors(key):
                self._get_client().head_object(Bucket=self.bucket, Key=key)
        except StorageNotFound:
            return False
        return True

    def download(self, key: str, destination: str) -> None:
        key = normalize_key(key)
        with self._translate_errors(key):
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            self._get_client().download_file(self.bucket, key, destination)


def create_storage_backend(settings: Settings) -> StorageBackend:
    """Create the storage backend selected by ``STORAGE_BACKEND``."""
    backend_type = settings.STORAGE_BACKEND.lower()
    common = {
        "public_base_url": settings.PUBLIC_BASE_URL,
        "cdn_domain": settings.CDN_DOMAIN,
        "cdn_enabled": settings.CDN_ENABLED,
    }

    if backend_type == "local":
        return LocalStorage(settings.LOCAL_STORAGE_PATH, **common)
    elif backend_type == "nfs":
        return NFSStorage(settings.NFS_MOUNT_POINT, **common)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            **common,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class StorageService:
    """Async-compatible storage service wrapper.

    Backend calls block on disk or network I/O, so they run in a worker thread
    to keep the event loop free for the scheduler and other jobs.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend

    async def put(self, key: str, data: PutData, content_type: Optional[str] = None) -> str:
        return await asyncio.to_thread(self.backend.put, key, data, content_type)

    async def put_tree(self, root_key: str, files: TreeData) -> str:
        return await asyncio.to_thread(self.backend.put_tree, root_key, files)

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self.backend.get, key)

    async def list(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self.backend.list, prefix)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.backend.delete, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.backend.exists, key)

    async def download(self, key: str, destination: str) -> None:
        await asyncio.to_thread(self.backend.download, key, destination)

    def public_url(self, key: str) -> str:
        return self.backend.public_url(key)
