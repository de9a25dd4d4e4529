"""
S3 Object Store — knowledge-base document bytes

Layout:
    s3://<BUCKET>/knowledge-base/<category>/<document_id>/<file_name>

The category partition and root prefix are built server-side
(build_blob_path); callers never hand in a raw key. Every key that reaches
S3 still goes through sanitize_blob_name() so a crafted file name cannot
climb out of the knowledge-base prefix.

Object metadata travels as HTTP headers (x-amz-meta-*), which only carry
ASCII. sanitize_metadata() reduces values to that set before the upload
boundary.
"""

from __future__ import annotations

import logging
import mimetypes
import unicodedata
import uuid
from dataclasses import dataclass
from typing import Any, BinaryIO

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from rag_ingestion.core.config import settings
from rag_ingestion.core.exceptions import ObjectStoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredBlob:
    """Identity of an uploaded object — persisted as Document.blob_name / blob_url."""
    url:          str
    name:         str          # full S3 key including prefix
    size_bytes:   int = 0
    content_type: str = "application/octet-stream"
    etag:         str = ""


@dataclass(frozen=True)
class PresignedUrl:
    url:        str
    expires_in: int   # seconds
    method:     str   # GET


# ---------------------------------------------------------------------------
# Naming / metadata helpers
# ---------------------------------------------------------------------------

def sanitize_metadata(metadata: dict[str, Any] | None) -> dict[str, str]:
    """
    Reduce metadata values to printable ASCII.

    NFKD-decompose, drop combining marks, drop anything still outside ASCII,
    then trim. None values are skipped.
    """
    clean: dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        decomposed = unicodedata.normalize("NFKD", str(value))
        stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
        clean[key] = stripped.encode("ascii", "ignore").decode("ascii").strip()
    return clean


def sanitize_blob_name(path: str) -> str:
    """Normalise separators and remove leading slashes and '..' segments."""
    parts = path.replace("\\", "/").split("/")
    kept = [p for p in parts if p and p not in (".", "..")]
    return "/".join(kept)


def build_blob_path(category: str, document_id: uuid.UUID | str, file_name: str) -> str:
    """
    knowledge-base/<category>/<document_id>/<file_name>

    The document id segment keeps two documents with the same file name
    from sharing (and overwriting or deleting) one object.
    """
    return sanitize_blob_name(
        f"{settings.blob_root_prefix}/{category}/{document_id}/{file_name}"
    )


def blob_file_name(blob_name: str) -> str:
    """Bare file name of a key (last path segment)."""
    return blob_name.rsplit("/", 1)[-1]


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3StorageService:
    """
    Async S3 operations over a single bucket.

    upload() returns a presigned GET URL as the blob URL; the bucket itself
    is private.
    """

    def __init__(
        self,
        bucket: str | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._session = session or aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict[str, Any] = {"region_name": settings.aws_region}
        if settings.s3_endpoint_url:
            kwargs["endpoint_url"] = settings.s3_endpoint_url
        if settings.aws_access_key_id:
            # Local dev only; prod uses the task role / IRSA.
            kwargs["aws_access_key_id"] = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upload(
        self,
        path: str,
        body: bytes | BinaryIO,
        metadata: dict[str, str] | None = None,
        content_type: str | None = None,
    ) -> StoredBlob:
        """
        Upload (overwrite) an object.

        Args:
            path:         Object key; sanitized again here.
            body:         Raw bytes or file-like object.
            metadata:     ASCII string pairs stored as S3 user metadata.
            content_type: MIME type; guessed from the key if omitted.
        """
        key = sanitize_blob_name(path)
        if not key:
            raise ObjectStoreError(f"Invalid blob path: {path!r}")

        ct  = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        raw = body if isinstance(body, bytes) else body.read()

        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=raw,
                    ContentType=ct,
                    Metadata=metadata or {},
                )
                url = await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self._bucket, "Key": key},
                    ExpiresIn=settings.blob_url_ttl_seconds,
                )
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Upload failed for {key}: {exc}") from exc

        logger.info("S3 upload ok | key=%s size=%d", key, len(raw))

        return StoredBlob(
            url=url,
            name=key,
            size_bytes=len(raw),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def download(self, name: str) -> bytes:
        key = sanitize_blob_name(name)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise ObjectStoreError(f"Download failed for {key}: {exc}") from exc

    async def delete(self, name: str) -> None:
        """Hard delete. S3 treats a missing key as success."""
        key = sanitize_blob_name(name)
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Delete failed for {key}: {exc}") from exc
        logger.info("S3 delete | key=%s", key)

    async def list(self, prefix: str = "", max_keys: int = 1000) -> list[str]:
        """Keys under prefix (defaults to the knowledge-base root)."""
        scoped = sanitize_blob_name(prefix) or settings.blob_root_prefix
        async with self._client() as s3:
            resp = await s3.list_objects_v2(
                Bucket=self._bucket,
                Prefix=scoped,
                MaxKeys=max_keys,
            )
        return [obj["Key"] for obj in resp.get("Contents", [])]

    async def generate_presigned_get(
        self,
        name: str,
        expires_in: int = 900,   # 15 minutes default
    ) -> PresignedUrl:
        """Short-lived presigned GET URL scoped to the exact key."""
        key = sanitize_blob_name(name)
        async with self._client() as s3:
            url = await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        return PresignedUrl(url=url, expires_in=expires_in, method="GET")

    async def head(self, name: str) -> dict:
        """Return metadata for an object without downloading it."""
        key = sanitize_blob_name(name)
        async with self._client() as s3:
            try:
                return await s3.head_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if exc.response["Error"]["Code"] in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise
