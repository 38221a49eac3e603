"""Blob storage for community covers, course media and post media.

Objects are addressed by a logical bucket (``community-media``, ``post-media``)
and a path inside it. :class:`LocalBlobStore` keeps them on disk and is what
tests and local runs use; :class:`S3BlobStore` puts them in one S3-compatible
bucket, with the logical bucket as the key prefix.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path, PurePosixPath

from boto3.session import Session
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from circlekit.core.settings import settings
from circlekit.errors import BackendError, ValidationError

logger = logging.getLogger(__name__)

COMMUNITY_MEDIA_BUCKET = "community-media"
POST_MEDIA_BUCKET = "post-media"

_ALLOWED_PREFIXES = ("image/", "video/")


@dataclass(frozen=True)
class StoredObject:
    """Metadata returned after storing an object."""

    bucket: str
    path: str
    url: str
    content_type: str
    size: int


class BlobStore(ABC):
    """Interface of the object store: upload bytes, resolve public URLs."""

    @abstractmethod
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> StoredObject:
        """Store ``data`` and return where it can be fetched from."""

    @abstractmethod
    async def delete(self, bucket: str, path: str) -> None:
        """Remove an object; removing a missing object is not an error."""

    @abstractmethod
    def get_public_url(self, bucket: str, path: str) -> str:
        """Return the public URL of an object."""

    def path_from_url(self, bucket: str, url: str) -> str | None:
        """Recover the object path from a public URL this store produced."""
        prefix = self.get_public_url(bucket, "")
        if not url.startswith(prefix) or len(url) == len(prefix):
            return None
        return url[len(prefix):]


def _object_key(bucket: str, path: str) -> PurePosixPath:
    relative = PurePosixPath(bucket) / PurePosixPath(path)
    if relative.is_absolute() or ".." in relative.parts:
        raise ValidationError(f"Invalid object path: {path}")
    return relative


def _check_size(data: bytes) -> None:
    if len(data) > settings.media_max_bytes:
        raise ValidationError("File is too large")


class LocalBlobStore(BlobStore):
    """Filesystem-backed store; objects are served from ``base_url``."""

    def __init__(self, root: str | Path | None = None, base_url: str | None = None) -> None:
        self.root = Path(root or settings.media_root)
        self.base_url = (base_url if base_url is not None else settings.media_base_url).rstrip("/")

    def _resolve(self, bucket: str, path: str) -> Path:
        return self.root.joinpath(*_object_key(bucket, path).parts)

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> StoredObject:
        _check_size(data)
        target = self._resolve(bucket, path)
        try:
            await asyncio.to_thread(_write_file, target, data)
        except OSError as exc:
            logger.error("Upload of %s/%s failed: %s", bucket, path, exc)
            raise BackendError(f"Failed to upload {path}", code="upload_failed") from exc
        return StoredObject(
            bucket=bucket,
            path=path,
            url=self.get_public_url(bucket, path),
            content_type=content_type,
            size=len(data),
        )

    async def delete(self, bucket: str, path: str) -> None:
        target = self._resolve(bucket, path)
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as exc:
            logger.error("Deleting %s/%s failed: %s", bucket, path, exc)
            raise BackendError(f"Failed to delete {path}", code="delete_failed") from exc

    def get_public_url(self, bucket: str, path: str) -> str:
        _object_key(bucket, path)
        return f"{self.base_url}/{bucket}/{path}"


def _write_file(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


@lru_cache(maxsize=1)
def _s3_client() -> BaseClient:
    """Create a shared boto3 client from the S3 settings."""
    session = Session()
    return session.client(
        "s3",
        region_name=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
    )


class S3BlobStore(BlobStore):
    """Store backed by an S3-compatible bucket (AWS S3, DigitalOcean Spaces, MinIO)."""

    def __init__(
        self,
        bucket_name: str | None = None,
        public_url: str | None = None,
        *,
        client: BaseClient | None = None,
    ) -> None:
        self.bucket_name = bucket_name or settings.s3_bucket
        if not self.bucket_name:
            raise BackendError("S3 storage selected but S3_BUCKET is not set", code="storage_misconfigured")
        endpoint = public_url or settings.s3_public_url
        if not endpoint:
            endpoint = f"https://{self.bucket_name}.s3.{settings.s3_region}.amazonaws.com"
        self.public_url = endpoint.rstrip("/")
        self.client = client or _s3_client()

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> StoredObject:
        _check_size(data)
        key = str(_object_key(bucket, path))

        def _put() -> None:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL="public-read",
            )

        try:
            await asyncio.to_thread(_put)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Upload of %s to bucket %s failed: %s", key, self.bucket_name, exc)
            raise BackendError(f"Failed to upload {path}", code="upload_failed") from exc
        return StoredObject(
            bucket=bucket,
            path=path,
            url=self.get_public_url(bucket, path),
            content_type=content_type,
            size=len(data),
        )

    async def delete(self, bucket: str, path: str) -> None:
        key = str(_object_key(bucket, path))
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Deleting %s from bucket %s failed: %s", key, self.bucket_name, exc)
            raise BackendError(f"Failed to delete {path}", code="delete_failed") from exc

    def get_public_url(self, bucket: str, path: str) -> str:
        _object_key(bucket, path)
        return f"{self.public_url}/{bucket}/{path}"


def build_blob_store() -> BlobStore:
    """Return the store selected by ``STORAGE_BACKEND``."""
    if settings.storage_backend == "s3":
        return S3BlobStore()
    return LocalBlobStore()


def media_kind(content_type: str) -> str:
    """Map a MIME type to the post media kind (``image`` or ``video``)."""
    if not content_type.startswith(_ALLOWED_PREFIXES):
        raise ValidationError(f"Unsupported media type: {content_type}")
    return content_type.split("/", 1)[0]


def object_path(prefix: str, stem: str, filename: str | None, content_type: str) -> str:
    """Build a collision-free object path such as ``12/cover-<uuid>.jpg``."""
    extension = Path(filename or "").suffix.lower()
    if not extension:
        extension = mimetypes.guess_extension(content_type) or ""
    return f"{prefix}/{stem}-{uuid.uuid4().hex}{extension}"
