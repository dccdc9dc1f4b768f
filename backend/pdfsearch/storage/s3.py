"""
S3 Document Storage

Every object for a document lives under one server-built prefix:

    s3://<S3_BUCKET>/<S3_PREFIX>documents/<document_id>/source.pdf
    s3://<S3_BUCKET>/<S3_PREFIX>documents/<document_id>/content.json

The API process writes both at upload time; the Celery worker reads the
parsed content back when a job carries no payload, so the two processes
never need to share a disk. Any S3-compatible endpoint works (MinIO in
local dev via S3_ENDPOINT_URL).

Error mapping:
  NoSuchKey / 404            → None from the read helpers
  any other ClientError      → DependencyError("s3"), retried by the worker
  BotoCoreError (network…)   → DependencyError("s3")
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from pdfsearch.core.config import Settings
from pdfsearch.core.errors import DependencyError

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


# ---------------------------------------------------------------------------
# Object kinds — one fixed name per document partition
# ---------------------------------------------------------------------------

class ObjectKind(str, Enum):
    SOURCE  = "source.pdf"      # the uploaded PDF
    CONTENT = "content.json"    # parser output submitted with it


_CONTENT_TYPES = {
    ObjectKind.SOURCE:  "application/pdf",
    ObjectKind.CONTENT: "application/json",
}


@dataclass(frozen=True)
class StoredObject:
    """Returned by put helpers."""
    key:        str
    bucket:     str
    size_bytes: int
    etag:       str


# ---------------------------------------------------------------------------
# Storage service
# ---------------------------------------------------------------------------

class S3DocumentStorage:
    """
    Async S3 operations scoped to the document partition of one bucket.

    `session` is an aioboto3.Session (or anything exposing the same
    `client("s3", ...)` async context manager).
    """

    def __init__(
        self,
        bucket:       str,
        *,
        prefix:       str = "",
        region_name:  str | None = None,
        endpoint_url: str | None = None,
        kms_key_arn:  str | None = None,
        session:      Any = None,
    ) -> None:
        self._bucket       = bucket
        self._prefix       = prefix
        self._region_name  = region_name
        self._endpoint_url = endpoint_url or None
        self._kms_key_arn  = kms_key_arn or None
        self._session      = session or aioboto3.Session()

    @classmethod
    def from_settings(cls, settings: Settings, session: Any = None) -> "S3DocumentStorage":
        if session is None:
            session = aioboto3.Session(
                aws_access_key_id=settings.aws_access_key_id or None,
                aws_secret_access_key=settings.aws_secret_access_key or None,
            )
        return cls(
            settings.s3_bucket,
            prefix=settings.s3_prefix,
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
            kms_key_arn=settings.s3_kms_key_arn,
            session=session,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def key(self, document_id: UUID | str, kind: ObjectKind) -> str:
        """Server-built key; nothing client-supplied ever reaches it."""
        return f"{self._prefix}documents/{document_id}/{kind.value}"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        return self._session.client(
            "s3",
            region_name=self._region_name,
            endpoint_url=self._endpoint_url,
        )

    def _sse_params(self) -> dict[str, str]:
        if not self._kms_key_arn:
            return {}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_arn}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put_object(
        self,
        document_id: UUID | str,
        kind:        ObjectKind,
        body:        bytes,
    ) -> StoredObject:
        key = self.key(document_id, kind)
        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=_CONTENT_TYPES[kind],
                    Metadata={"document_id": str(document_id)},
                    **self._sse_params(),
                )
        except (ClientError, BotoCoreError) as exc:
            raise DependencyError("s3", f"put {key} failed: {exc}") from exc

        logger.info("S3 upload ok | doc=%s key=%s size=%d", document_id, key, len(body))
        return StoredObject(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            etag=(resp or {}).get("ETag", "").strip('"'),
        )

    async def put_upload(self, document_id: UUID | str, data: bytes) -> StoredObject:
        return await self.put_object(document_id, ObjectKind.SOURCE, data)

    async def put_content(self, document_id: UUID | str, content: dict[str, Any]) -> StoredObject:
        return await self.put_object(document_id, ObjectKind.CONTENT, json.dumps(content).encode("utf-8"))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_object(self, document_id: UUID | str, kind: ObjectKind) -> bytes | None:
        """Object bytes, or None if it was never stored."""
        key = self.key(document_id, kind)
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise DependencyError("s3", f"get {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise DependencyError("s3", f"get {key} failed: {exc}") from exc

    async def get_upload(self, document_id: UUID | str) -> bytes | None:
        return await self.get_object(document_id, ObjectKind.SOURCE)

    async def get_content(self, document_id: UUID | str) -> dict[str, Any] | None:
        """Stored parser output, or None if it was never saved."""
        raw = await self.get_object(document_id, ObjectKind.CONTENT)
        if raw is None:
            return None
        return json.loads(raw)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, document_id: UUID | str) -> int:
        """Hard-delete every object of the document. Returns keys removed."""
        keys = [self.key(document_id, kind) for kind in ObjectKind]
        try:
            async with self._client() as s3:
                for key in keys:
                    await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise DependencyError("s3", f"delete documents/{document_id} failed: {exc}") from exc

        logger.info("S3 delete | doc=%s keys=%d", document_id, len(keys))
        return len(keys)
