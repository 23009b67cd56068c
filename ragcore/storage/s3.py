"""
S3 Storage Service — transient upload bytes

Uploaded files live in S3 only between acceptance and processing: the worker
reads them once and the ingestion service deletes them on every exit path
(success, failure, dispatch error, stale reaper).

Keys are generated server-side and unique per upload:
    <prefix>/<uuid4 hex><ext>
so two uploads never share an object, even when they race on the same hash.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from typing import Optional

import aioboto3
from botocore.exceptions import ClientError

from ragcore.core.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class S3Object:
    """Returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


def build_upload_key(filename: str, prefix: str = settings.s3_upload_prefix) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    return f"{prefix.rstrip('/')}/{uuid.uuid4().hex}{ext}"


class S3StorageService:
    """Async S3 operations on the upload bucket."""

    def __init__(self, config: Settings = settings) -> None:
        self._cfg = config
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._cfg.s3_bucket

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._cfg.aws_region}
        if self._cfg.s3_endpoint_url:
            kwargs["endpoint_url"] = self._cfg.s3_endpoint_url
        # Local dev: static keys; production: task role (keys left empty)
        if self._cfg.aws_access_key_id:
            kwargs["aws_access_key_id"] = self._cfg.aws_access_key_id
            kwargs["aws_secret_access_key"] = self._cfg.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> S3Object:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=ct,
                Metadata=metadata or {},
            )

        logger.info("S3 upload ok | key=%s size=%d", key, len(body))
        return S3Object(
            key=key,
            bucket=self.bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self.bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def delete_object(self, key: str) -> None:
        """Hard delete; S3 treats a missing key as success."""
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)
        logger.info("S3 delete | key=%s", key)
