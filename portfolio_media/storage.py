"""Storage backend abstraction for derivative bytes.

Derivatives are written through a ``StorageClient`` that is built once at
startup from the application settings and injected into ``Store``. Two
backends exist:

    local: files under a single uploads root, referenced by URL paths such
        as ``/uploads/projects/covers/cover-small-<token>.webp``.
    s3: objects under a key prefix in one bucket, referenced by their
        public URL.

Whatever the backend, a stored derivative is identified by exactly one
reference string. ``StorageClient.normalize`` maps any incoming reference
(from a data record or a cleanup request) onto that canonical form so that
comparisons and deletions never depend on how a caller spelled a path.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, Literal, Optional, Union
from urllib.parse import urlsplit

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import InvalidReference, NotFound, StoreError

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]+")
_REPEATED_SLASHES = re.compile(r"/{2,}")

CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True)
class LocalFile:
    name: str
    path: Path
    reference: str
    backend: Literal["local"] = "local"

    def resolve(self) -> str:
        return self.reference


@dataclass(frozen=True)
class RemoteFile:
    name: str
    key: str
    reference: str
    backend: Literal["s3"] = "s3"

    def resolve(self) -> str:
        return self.reference


StoredAsset = Union[LocalFile, RemoteFile]


@dataclass(frozen=True)
class StoredObject:
    """One entry of a storage listing.

    ``location`` is where the backend actually keeps the object (a file
    path or an S3 key). Listed objects are deleted through it, never by
    re-parsing ``reference``.
    """

    reference: str
    size: int
    modified: float
    location: str


def generate_name(base_name: str, label: str, extension: str) -> str:
    """Build a collision-resistant file name.

    The random token makes names unique across concurrent requests; the
    base and label only keep names readable.
    """
    base = _UNSAFE_NAME_CHARS.sub("-", (base_name or "").lower()).strip("-")[:40] or "asset"
    safe_label = _UNSAFE_NAME_CHARS.sub("-", label.lower()).strip("-") or "file"
    return f"{base}-{safe_label}-{uuid.uuid4().hex}{extension}"


def _clean(reference: str) -> str:
    value = reference.strip().replace("\\", "/")
    return value.split("#", 1)[0].split("?", 1)[0]


class StorageClient(ABC):
    """Interface shared by every storage backend."""

    name: str

    @abstractmethod
    def ensure_root(self) -> None:
        """Make sure the uploads root (or bucket) is usable."""

    @abstractmethod
    def write(self, key: str, data: bytes, content_type: str) -> StoredAsset:
        """Persist ``data`` under ``key`` (relative to the root)."""

    @abstractmethod
    def delete(self, reference: str) -> bool:
        """Delete one asset. Returns False when it does not exist."""

    @abstractmethod
    def delete_object(self, obj: StoredObject) -> bool:
        """Delete an object returned by ``iter_objects``."""

    @abstractmethod
    def exists(self, reference: str) -> bool:
        pass

    @abstractmethod
    def iter_objects(self) -> Iterator[StoredObject]:
        """Yield every stored object under the root, recursively."""

    @abstractmethod
    def normalize(self, reference: str) -> str:
        """Return the canonical form of ``reference``."""


class LocalStorageClient(StorageClient):
    """Files on disk under one uploads root."""

    name = "local"

    def __init__(self, root: Union[str, Path], url_prefix: str = "/uploads") -> None:
        self.root = Path(root).resolve()
        self.url_prefix = "/" + url_prefix.strip("/") if url_prefix.strip("/") else ""

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot create uploads root {self.root}: {exc}") from exc

    def reference_for(self, path: Path) -> str:
        return f"{self.url_prefix}/{path.relative_to(self.root).as_posix()}"

    def normalize(self, reference: str) -> str:
        value = _clean(reference)
        if value.startswith(("http://", "https://")):
            value = urlsplit(value).path
        value = "/" + _REPEATED_SLASHES.sub("/", value).lstrip("/")
        if self.url_prefix and not value.startswith(self.url_prefix + "/"):
            value = self.url_prefix + value
        return value

    def path_for(self, reference: str) -> Path:
        value = self.normalize(reference)
        relative = value[len(self.url_prefix):].lstrip("/")
        path = (self.root / relative).resolve()
        if path == self.root or self.root not in path.parents:
            raise InvalidReference(f"Reference {reference!r} is outside the uploads root")
        return path

    def write(self, key: str, data: bytes, content_type: str) -> LocalFile:
        destination = (self.root / key).resolve()
        if self.root not in destination.parents:
            raise StoreError(f"Key {key!r} is outside the uploads root")
        tmp_path = destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, destination)
        except OSError as exc:
            if tmp_path.exists():
                tmp_path.unlink()
            raise StoreError(f"Could not write {key}: {exc}") from exc
        return LocalFile(name=destination.name, path=destination, reference=self.reference_for(destination))

    def delete(self, reference: str) -> bool:
        return self._unlink(self.path_for(reference), reference)

    def delete_object(self, obj: StoredObject) -> bool:
        path = Path(obj.location)
        if self.root not in path.parents:
            raise InvalidReference(f"Listed object {obj.location!r} is outside the uploads root")
        return self._unlink(path, obj.reference)

    def _unlink(self, path: Path, reference: str) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreError(f"Could not delete {reference}: {exc}") from exc
        return True

    def exists(self, reference: str) -> bool:
        return self.path_for(reference).is_file()

    def iter_objects(self) -> Iterator[StoredObject]:
        if not self.root.is_dir():
            raise NotFound(f"Uploads directory not found: {self.root}")
        for path in sorted(self.root.rglob("*")):
            try:
                if not path.is_file():
                    continue
                stat = path.stat()
            except OSError as exc:
                logger.warning("Skipping unreadable entry %s: %s", path, exc)
                continue
            yield StoredObject(
                reference=self.reference_for(path),
                size=stat.st_size,
                modified=stat.st_mtime,
                location=str(path),
            )


class S3StorageClient(StorageClient):
    """Objects in an S3 bucket under a key prefix."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: str = "eu-west-1",
        prefix: str = "portfolio",
        public_base_url: Optional[str] = None,
        client=None,
    ) -> None:
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/")
        self.public_base_url = (public_base_url or f"https://{bucket}.s3.{region}.amazonaws.com").rstrip("/")
        self.client = client or boto3.client("s3", region_name=region)

    def _key(self, key: str) -> str:
        key = key.lstrip("/")
        if self.prefix and not key.startswith(self.prefix + "/"):
            key = f"{self.prefix}/{key}"
        return key

    def reference_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def normalize(self, reference: str) -> str:
        value = _clean(reference)
        if value.startswith(("http://", "https://")):
            if value.startswith(self.public_base_url + "/"):
                key = value[len(self.public_base_url) + 1:]
                return self.reference_for(_REPEATED_SLASHES.sub("/", key))
            return value
        return self.reference_for(self._key(_REPEATED_SLASHES.sub("/", value)))

    def key_for(self, reference: str) -> str:
        value = self.normalize(reference)
        base = self.public_base_url + "/"
        key = value[len(base):] if value.startswith(base) else ""
        if not key or (self.prefix and not key.startswith(self.prefix + "/")) or ".." in key.split("/"):
            raise InvalidReference(f"Reference {reference!r} is outside the bucket prefix")
        return key

    def ensure_root(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as exc:
            raise NotFound(f"S3 bucket {self.bucket} is not accessible: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreError(f"S3 bucket {self.bucket} is not reachable: {exc}") from exc

    def write(self, key: str, data: bytes, content_type: str) -> RemoteFile:
        s3_key = self._key(key)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=s3_key,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"S3 upload failed for {s3_key}: {exc}") from exc
        return RemoteFile(name=s3_key.rsplit("/", 1)[-1], key=s3_key, reference=self.reference_for(s3_key))

    def exists(self, reference: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.key_for(reference))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StoreError(f"S3 head_object failed for {reference}: {exc}") from exc
        return True

    def delete(self, reference: str) -> bool:
        if not self.exists(reference):
            return False
        return self._delete_key(self.key_for(reference), reference)

    def delete_object(self, obj: StoredObject) -> bool:
        return self._delete_key(obj.location, obj.reference)

    def _delete_key(self, key: str, reference: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"S3 delete failed for {reference}: {exc}") from exc
        return True

    def iter_objects(self) -> Iterator[StoredObject]:
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}/" if self.prefix else ""):
                for obj in page.get("Contents", []):
                    yield StoredObject(
                        reference=self.reference_for(obj["Key"]),
                        size=int(obj.get("Size", 0)),
                        modified=obj["LastModified"].timestamp(),
                        location=obj["Key"],
                    )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "NoSuchBucket":
                raise NotFound(f"S3 bucket {self.bucket} not found") from exc
            raise StoreError(f"S3 listing failed: {exc}") from exc


class Store:
    """Writes derivatives under generated names and deletes them by reference."""

    def __init__(self, client: StorageClient) -> None:
        self.client = client

    def store(
        self,
        data: bytes,
        kind_dir: str,
        base_name: str,
        label: str,
        extension: str = ".webp",
        content_type: str = "image/webp",
    ) -> StoredAsset:
        name = generate_name(base_name, label, extension)
        asset = self.client.write(f"{kind_dir.strip('/')}/{name}", data, content_type)
        logger.info("Stored %s (%d bytes) at %s", name, len(data), asset.resolve())
        return asset

    def delete(self, reference: str) -> bool:
        deleted = self.client.delete(reference)
        if deleted:
            logger.info("Deleted %s", self.client.normalize(reference))
        return deleted

    def discard(self, assets: Iterable[StoredAsset]) -> None:
        """Best-effort removal of assets written for a failed upload."""
        for asset in assets:
            try:
                self.client.delete(asset.resolve())
            except StoreError as exc:
                logger.error("Could not roll back %s: %s", asset.resolve(), exc)


def build_storage_client(settings: "Settings") -> StorageClient:
    """Construct the storage client selected by ``settings.storage_backend``."""
    if settings.storage_backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET is required when STORAGE_BACKEND is 's3'")
        return S3StorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            prefix=settings.s3_prefix,
            public_base_url=settings.s3_public_base_url,
        )
    return LocalStorageClient(settings.uploads_dir, settings.uploads_url_prefix)
