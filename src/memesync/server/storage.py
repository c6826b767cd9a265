"""Object storage abstraction for asset blobs.

This module provides:
- Abstract key -> bytes interface (put/get/head/delete/list/copy)
- LocalFSStorage for development/testing
- S3Storage for production (Cloudflare R2, AWS, MinIO)
"""

from __future__ import annotations

import hashlib
import json
import mimetypes
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from memesync.server.errors import ObjectNotFoundError, StorageIOError, ValidationError

if TYPE_CHECKING:
    from typing import Any

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class ObjectInfo:
    """Metadata of a stored object.

    Attributes:
        key: Object key.
        size: Size in bytes.
        content_type: Stored content type, if known.
        etag: Entity tag, if known.
        last_modified: Upload time, if known.
    """

    key: str
    size: int
    content_type: str | None = None
    etag: str | None = None
    last_modified: datetime | None = None


@dataclass
class StoredObject:
    """An object's bytes together with its metadata."""

    data: bytes
    info: ObjectInfo


def validate_key(key: str) -> str:
    """Reject keys that could escape the bucket namespace.

    Args:
        key: Object key such as "assets/abc.png".

    Returns:
        The key unchanged.

    Raises:
        ValidationError: If the key is empty, absolute or contains ".." segments.
    """
    if not key or key.startswith("/") or "\\" in key:
        raise ValidationError(f"Invalid object key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise ValidationError(f"Invalid object key: {key!r}")
    return key


class ObjectStorage(ABC):
    """Abstract interface for blob storage keyed by string."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where objects are stored."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> ObjectInfo:
        """Store an object, replacing any existing one.

        Args:
            key: Object key.
            data: Object bytes.
            content_type: MIME type served back on reads.

        Returns:
            Metadata of the stored object.
        """

    @abstractmethod
    def get(self, key: str) -> StoredObject:
        """Retrieve an object.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
        """

    @abstractmethod
    def head(self, key: str) -> ObjectInfo | None:
        """Return object metadata, or None if the object doesn't exist."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object.

        Returns:
            True if the object was deleted, False if it didn't exist.
        """

    @abstractmethod
    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        """Iterate over every object whose key starts with prefix."""

    def exists(self, key: str) -> bool:
        """Check if an object exists."""
        return self.head(key) is not None

    def copy(self, source_key: str, dest_key: str, content_type: str | None = None) -> bool:
        """Copy an object to a new key.

        Args:
            source_key: Key of the object to copy.
            dest_key: Destination key.
            content_type: Content type for the copy (default: keep the source's).

        Returns:
            True if copied, False if the source doesn't exist.
        """
        try:
            source = self.get(source_key)
        except ObjectNotFoundError:
            return False
        self.put(
            dest_key,
            source.data,
            content_type or source.info.content_type or DEFAULT_CONTENT_TYPE,
        )
        return True


class LocalFSStorage(ObjectStorage):
    """Local filesystem storage for development and testing.

    Object bytes live under ``objects/<key>`` and a small JSON sidecar with
    content type and etag under ``meta/<key>.json``.
    """

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory for object storage.
        """
        self._base_path = Path(base_path).resolve()
        self._objects = self._base_path / "objects"
        self._meta = self._base_path / "meta"
        self._objects.mkdir(parents=True, exist_ok=True)
        self._meta.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def _object_path(self, key: str) -> Path:
        return self._objects / PurePosixPath(validate_key(key))

    def _meta_path(self, key: str) -> Path:
        return self._meta / PurePosixPath(validate_key(key + ".json"))

    def _info(self, key: str, path: Path) -> ObjectInfo:
        try:
            stat = path.stat()
            meta: dict[str, str] = {}
            meta_path = self._meta_path(key)
            if meta_path.exists():
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageIOError(f"Failed to read metadata of object: {key}") from e
        return ObjectInfo(
            key=key,
            size=stat.st_size,
            content_type=meta.get("content_type") or mimetypes.guess_type(key)[0],
            etag=meta.get("etag"),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
        )

    def put(self, key: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> ObjectInfo:
        """Store an object."""
        path = self._object_path(key)
        meta_path = self._meta_path(key)
        etag = hashlib.md5(data).hexdigest()  # noqa: S324
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            meta_path.parent.mkdir(parents=True, exist_ok=True)
            meta_path.write_text(
                json.dumps({"content_type": content_type, "etag": etag}),
                encoding="utf-8",
            )
        except OSError as e:
            raise StorageIOError(f"Failed to store object: {key}") from e
        return self._info(key, path)

    def get(self, key: str) -> StoredObject:
        """Retrieve an object."""
        path = self._object_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}")
        try:
            return StoredObject(data=path.read_bytes(), info=self._info(key, path))
        except OSError as e:
            raise StorageIOError(f"Failed to read object: {key}") from e

    def head(self, key: str) -> ObjectInfo | None:
        """Return object metadata if it exists."""
        path = self._object_path(key)
        if not path.is_file():
            return None
        return self._info(key, path)

    def delete(self, key: str) -> bool:
        """Delete an object."""
        path = self._object_path(key)
        if not path.is_file():
            return False
        meta_path = self._meta_path(key)
        try:
            path.unlink()
            meta_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to delete object: {key}") from e
        return True

    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        """Iterate over objects in key order."""
        try:
            paths = sorted(p for p in self._objects.rglob("*") if p.is_file())
        except OSError as e:
            raise StorageIOError(f"Failed to list objects under {prefix!r}") from e
        for path in paths:
            key = path.relative_to(self._objects).as_posix()
            if key.startswith(prefix):
                yield self._info(key, path)


class S3Storage(ObjectStorage):
    """S3-compatible storage for production (Cloudflare R2, AWS, MinIO, etc.)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: S3 bucket name.
            endpoint_url: Custom endpoint URL (for R2, MinIO, etc.).
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
        """
        import boto3

        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}"
        return f"S3: s3://{self._bucket}"

    @staticmethod
    def _is_not_found(error: Exception) -> bool:
        code = getattr(error, "response", {}).get("Error", {}).get("Code")
        return code in ("404", "NoSuchKey", "NotFound")

    def put(self, key: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> ObjectInfo:
        """Store an object."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.put_object(
                Bucket=self._bucket,
                Key=validate_key(key),
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageIOError(f"Failed to store object: {key}") from e
        return ObjectInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            etag=response.get("ETag", "").strip('"') or None,
        )

    def get(self, key: str) -> StoredObject:
        """Retrieve an object."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=validate_key(key))
            body: bytes = response["Body"].read()
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {key}") from e
            raise StorageIOError(f"Failed to read object: {key}") from e
        except BotoCoreError as e:
            raise StorageIOError(f"Failed to read object: {key}") from e
        info = ObjectInfo(
            key=key,
            size=len(body),
            content_type=response.get("ContentType"),
            etag=response.get("ETag", "").strip('"') or None,
            last_modified=response.get("LastModified"),
        )
        return StoredObject(data=body, info=info)

    def head(self, key: str) -> ObjectInfo | None:
        """Return object metadata if it exists."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.head_object(Bucket=self._bucket, Key=validate_key(key))
        except ClientError as e:
            if self._is_not_found(e):
                return None
            raise StorageIOError(f"Failed to probe object: {key}") from e
        except BotoCoreError as e:
            raise StorageIOError(f"Failed to probe object: {key}") from e
        return ObjectInfo(
            key=key,
            size=response.get("ContentLength", 0),
            content_type=response.get("ContentType"),
            etag=response.get("ETag", "").strip('"') or None,
            last_modified=response.get("LastModified"),
        )

    def delete(self, key: str) -> bool:
        """Delete an object."""
        from botocore.exceptions import BotoCoreError, ClientError

        if not self.exists(key):
            return False
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageIOError(f"Failed to delete object: {key}") from e
        return True

    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        """Iterate over objects, following pagination."""
        from botocore.exceptions import BotoCoreError, ClientError

        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    yield ObjectInfo(
                        key=obj["Key"],
                        size=obj.get("Size", 0),
                        etag=obj.get("ETag", "").strip('"') or None,
                        last_modified=obj.get("LastModified"),
                    )
        except (BotoCoreError, ClientError) as e:
            raise StorageIOError(f"Failed to list objects under {prefix!r}") from e

    def copy(self, source_key: str, dest_key: str, content_type: str | None = None) -> bool:
        """Copy server-side without downloading the object."""
        from botocore.exceptions import BotoCoreError, ClientError

        kwargs: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": validate_key(dest_key),
            "CopySource": {"Bucket": self._bucket, "Key": validate_key(source_key)},
        }
        if content_type:
            kwargs["ContentType"] = content_type
            kwargs["MetadataDirective"] = "REPLACE"
        try:
            self._client.copy_object(**kwargs)
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise StorageIOError(f"Failed to copy {source_key} -> {dest_key}") from e
        except BotoCoreError as e:
            raise StorageIOError(f"Failed to copy {source_key} -> {dest_key}") from e
        return True


def create_storage(config: dict[str, str | None]) -> ObjectStorage:
    """Factory function to create storage from configuration.

    Args:
        config: Storage configuration dict with keys:
            - type: "local" or "s3"
            - For local: local_path
            - For S3: bucket, endpoint_url, access_key, secret_key, region

    Returns:
        Configured ObjectStorage instance.

    Raises:
        ValueError: If storage type is unknown.
    """
    storage_type = config.get("type", "local")

    if storage_type == "local":
        local_path = config.get("local_path") or "./storage"
        return LocalFSStorage(local_path)

    if storage_type == "s3":
        bucket = config.get("bucket")
        if not bucket:
            raise ValueError("S3 storage requires 'bucket' configuration")
        return S3Storage(
            bucket=bucket,
            endpoint_url=config.get("endpoint_url"),
            access_key=config.get("access_key"),
            secret_key=config.get("secret_key"),
            region=config.get("region") or "us-east-1",
        )

    raise ValueError(f"Unknown storage type: {storage_type}")
