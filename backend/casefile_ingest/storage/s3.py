"""
Object Storage Service  —  S3-Compatible

Case files and thumbnails live in an S3-compatible bucket (Supabase Storage's
S3 gateway, MinIO, or AWS S3). One ObjectStorage instance is bound to one
bucket; the pipeline builds one per run from the request's bucketName or the
configured default ("case-files").

Object layout:
    <bucket>/<storage_path>               uploaded source files (upload flow)
    <bucket>/thumbnails/<file_id>.jpg     previews written by the pipeline

Every call runs with botocore connect/read timeouts; a timed-out or refused
call surfaces as StorageError (or FileNotFoundError for a missing key) so the
caller can decide whether it is fatal (source download) or best-effort
(thumbnail upload).

Retrieval URLs:
  - If STORAGE_PUBLIC_URL is set: <public_url>/<bucket>/<path> (public bucket)
  - Otherwise: presigned GET URL (STORAGE_PRESIGNED_TTL seconds)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from casefile_ingest.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Download / upload failed for a reason other than a missing object."""


class FileTooLargeError(StorageError):
    pass


@dataclass(frozen=True)
class StoredObject:
    """Returned by upload_object: what was written and where."""
    bucket:       str
    key:          str
    size_bytes:   int
    content_type: str
    etag:         str


class ObjectStorage:
    """Async object operations against a single bucket."""

    def __init__(
        self,
        bucket:         str | None = None,
        *,
        max_file_size:  int | None = None,
        session:        aioboto3.Session | None = None,
    ) -> None:
        self.bucket = bucket or settings.storage_bucket
        self._max_file_size = max_file_size or settings.max_file_size_bytes
        self._session = session or aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {
            "region_name": settings.storage_region,
            "config": Config(
                connect_timeout=settings.storage_connect_timeout,
                read_timeout=settings.storage_read_timeout,
                retries={"max_attempts": 2, "mode": "standard"},
                s3={"addressing_style": "path"},
            ),
        }
        if settings.storage_endpoint_url:
            kwargs["endpoint_url"] = settings.storage_endpoint_url
        if settings.storage_access_key_id:
            kwargs["aws_access_key_id"] = settings.storage_access_key_id
            kwargs["aws_secret_access_key"] = settings.storage_secret_access_key
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def download(self, path: str) -> bytes:
        """
        Download an object.

        Raises:
            FileNotFoundError  the key does not exist
            FileTooLargeError  object exceeds max_file_size
            StorageError       any other storage / transport failure
        """
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self.bucket, Key=path)
                size = resp.get("ContentLength") or 0
                if size > self._max_file_size:
                    raise FileTooLargeError(
                        f"Object {path} is {size} bytes; limit is {self._max_file_size}"
                    )
                body = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in ("NoSuchKey", "404", "NotFound"):
                    raise FileNotFoundError(f"Object not found: {self.bucket}/{path}") from exc
                raise StorageError(f"Download failed for {self.bucket}/{path}: {code} {exc}") from exc
            except BotoCoreError as exc:
                raise StorageError(f"Download failed for {self.bucket}/{path}: {exc}") from exc

        logger.info("Storage download ok | bucket=%s key=%s size=%d", self.bucket, path, len(body))
        return body

    async def upload_object(self, path: str, body: bytes, content_type: str) -> StoredObject:
        """Write (or overwrite) an object."""
        async with self._client() as s3:
            try:
                resp = await s3.put_object(
                    Bucket=self.bucket,
                    Key=path,
                    Body=body,
                    ContentType=content_type,
                    CacheControl="max-age=3600",
                )
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"Upload failed for {self.bucket}/{path}: {exc}") from exc

        logger.info(
            "Storage upload ok | bucket=%s key=%s size=%d type=%s",
            self.bucket, path, len(body), content_type,
        )
        return StoredObject(
            bucket=self.bucket,
            key=path,
            size_bytes=len(body),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def upload(self, path: str, body: bytes, content_type: str) -> str:
        """Upload with overwrite semantics and return the retrieval URL."""
        await self.upload_object(path, body, content_type)
        return await self.public_url(path)

    async def public_url(self, path: str) -> str:
        if settings.storage_public_url:
            base = settings.storage_public_url.rstrip("/")
            return f"{base}/{self.bucket}/{quote(path)}"

        async with self._client() as s3:
            try:
                return await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.bucket, "Key": path},
                    ExpiresIn=settings.storage_presigned_ttl,
                )
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"Could not sign URL for {self.bucket}/{path}: {exc}") from exc
