"""
Search Cache — Redis, cache-aside, best effort.

Key layout:
    <cache_prefix><document_id>:<sha256 of the request fingerprint>
    e.g. search:3fa85f64-5717-4562-b3fc-2c963f66afa6:9c1e...

Keeping the document id in clear text lets purge_document() remove every
entry for a document with one SCAN MATCH pattern, independent of TTL.

The cache is an optimization, never a correctness dependency: every
operation catches Redis / connection / (de)serialization errors, logs a
warning and degrades to a miss or a no-op.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (RedisError, OSError, ValueError, TypeError)


class SearchCache:

    def __init__(self, client: Redis, prefix: str = "search:", default_ttl: int = 300) -> None:
        self._client      = client
        self._prefix      = prefix
        self._default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, prefix: str = "search:", default_ttl: int = 300) -> "SearchCache":
        return cls(Redis.from_url(url, decode_responses=True), prefix=prefix, default_ttl=default_ttl)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def build_key(self, document_id: UUID | str, fingerprint: str) -> str:
        digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
        return f"{self._prefix}{document_id}:{digest}"

    def document_pattern(self, document_id: UUID | str) -> str:
        return f"{self._prefix}{document_id}:*"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
            return json.loads(raw) if raw is not None else None
        except _CACHE_ERRORS as exc:
            logger.warning("Cache get failed | key=%s error=%s", key, exc)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            await self._client.set(key, json.dumps(value), ex=ttl or self._default_ttl)
            return True
        except _CACHE_ERRORS as exc:
            logger.warning("Cache set failed | key=%s error=%s", key, exc)
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except _CACHE_ERRORS as exc:
            logger.warning("Cache delete failed | key=%s error=%s", key, exc)
            return False

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except _CACHE_ERRORS as exc:
            logger.warning("Cache exists failed | key=%s error=%s", key, exc)
            return False

    async def purge_document(self, document_id: UUID | str) -> int:
        """Delete every cached search for the document. Returns entries removed."""
        pattern = self.document_pattern(document_id)
        removed = 0
        try:
            async for key in self._client.scan_iter(match=pattern, count=500):
                removed += int(await self._client.delete(key))
        except _CACHE_ERRORS as exc:
            logger.warning("Cache purge failed | doc=%s error=%s", document_id, exc)
            return removed
        logger.info("Cache purged | doc=%s entries=%d", document_id, removed)
        return removed

    async def ping(self) -> dict[str, Any]:
        try:
            await self._client.ping()
            return {"status": "ok"}
        except _CACHE_ERRORS as exc:
            logger.error("Redis health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except _CACHE_ERRORS as exc:
            logger.debug("Cache close failed: %s", exc)
