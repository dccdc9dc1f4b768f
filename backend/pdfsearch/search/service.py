"""
Search Service — document-scoped queries with cache-aside.

Request flow:
  1. Validate the query (≥ min length after trim)            → QueryTooShortError
  2. Load the document                                       → NotFoundError
  3. Require status == completed                             → NotReadyError
  4. Fingerprint (document, cleaned query, every option) → cache lookup
  5. Miss: query the document's index, shape the response
  6. Write-through only when there is at least one hit

All three precondition failures happen before the index is touched.
Empty result pages are never cached, so a document that becomes
searchable later is observed as soon as its index fills.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from pdfsearch.core.config import Settings
from pdfsearch.core.errors import NotReadyError, QueryTooShortError
from pdfsearch.models.documents import Document
from pdfsearch.pipeline.lifecycle import DocumentStatus
from pdfsearch.processing.extractor import analyze_chunks
from pdfsearch.schemas.documents import Pagination
from pdfsearch.schemas.search import (
    DocumentContext,
    DocumentStatsResponse,
    SearchHit,
    SearchMetadata,
    SearchOptions,
    SearchResponse,
)
from pdfsearch.search.cache import SearchCache
from pdfsearch.search.index import IndexSearchRequest, SearchIndexBase
from pdfsearch.store.metadata import MetadataStore

logger = logging.getLogger(__name__)

_QUERY_STRIP_RE = re.compile(r"""[^\w\s\-'"]""")
_WHITESPACE_RE  = re.compile(r"\s+")
_WORD_RE        = re.compile(r"[\w'-]+")

DEFAULT_SUGGESTION_LIMIT = 5


def normalize_query(query: str) -> str:
    """Trim, lowercase, blank out everything but word chars, spaces, hyphens and quotes."""
    cleaned = _QUERY_STRIP_RE.sub(" ", query.strip().lower())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def _document_context(doc: Document) -> DocumentContext:
    return DocumentContext(
        id=doc.id,
        filename=doc.original_name,
        total_pages=doc.total_pages,
        total_chunks=doc.total_chunks,
    )


def _to_hit(raw: dict[str, Any]) -> SearchHit:
    formatted = raw.get("_formatted") or {}
    return SearchHit(
        id=str(raw.get("id", "")),
        document_id=str(raw.get("documentId", "")),
        kind=raw.get("type"),
        content=raw.get("content", ""),
        page_number=int(raw.get("pageNumber") or 1),
        position=raw.get("position"),
        ocr_confidence=raw.get("ocrConfidence"),
        metadata=raw.get("metadata") or {},
        created_at=raw.get("createdAt"),
        highlighted=formatted.get("content"),
        matches_position=raw.get("_matchesPosition"),
    )


class SearchService:
    """
    Stateless service object — all dependencies are injected.
    Safe to share across concurrent requests.
    """

    def __init__(
        self,
        store:    MetadataStore,
        index:    SearchIndexBase,
        cache:    SearchCache,
        settings: Settings,
    ) -> None:
        self._store    = store
        self._index    = index
        self._cache    = cache
        self._settings = settings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_query(self, query: str | None) -> str:
        """Return the normalized query or raise QueryTooShortError."""
        min_length = self._settings.search_min_query_length
        trimmed = (query or "").strip()
        if len(trimmed) < min_length:
            raise QueryTooShortError(trimmed, min_length)
        cleaned = normalize_query(trimmed)
        if not cleaned:
            raise QueryTooShortError(trimmed, min_length)
        return cleaned

    async def _ready_document(self, document_id: UUID) -> Document:
        doc = await self._store.require_document(document_id)
        if doc.status != DocumentStatus.COMPLETED.value:
            raise NotReadyError(document_id, doc.status)
        return doc

    def resolve_limit(self, options: SearchOptions) -> int:
        return min(options.limit or self._settings.search_default_limit, self._settings.search_max_limit)

    @staticmethod
    def fingerprint(document_id: UUID, cleaned_query: str, options: SearchOptions, limit: int) -> str:
        payload = {
            "document_id":    str(document_id),
            "query":          cleaned_query,
            "limit":          limit,
            "offset":         options.offset,
            "type":           options.kind.value if options.kind else None,
            "page":           options.page,
            "min_confidence": options.min_confidence,
            "sort_by":        options.sort_by.value if options.sort_by else None,
            "sort_order":     options.sort_order.value,
        }
        return json.dumps(payload, sort_keys=True)

    def _index_request(self, query: str, options: SearchOptions, limit: int) -> IndexSearchRequest:
        return IndexSearchRequest(
            query=query,
            limit=limit,
            offset=options.offset,
            kind=options.kind.value if options.kind else None,
            page=options.page,
            min_confidence=options.min_confidence,
            sort_by=options.sort_by.value if options.sort_by else None,
            sort_order=options.sort_order.value,
            highlight_pre_tag=self._settings.search_highlight_pre_tag,
            highlight_post_tag=self._settings.search_highlight_post_tag,
            crop_length=self._settings.search_crop_length,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def search(
        self,
        document_id: UUID,
        query:       str,
        options:     SearchOptions | None = None,
    ) -> SearchResponse:
        options = options or SearchOptions()
        cleaned = self._validate_query(query)
        doc     = await self._ready_document(document_id)
        limit   = self.resolve_limit(options)

        key = self._cache.build_key(document_id, self.fingerprint(document_id, cleaned, options, limit))
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                response = SearchResponse.model_validate(cached)
            except PydanticValidationError as exc:
                logger.warning("Discarding unreadable cache entry | key=%s error=%s", key, exc)
            else:
                response.search_metadata.cached = True
                logger.debug("Search cache hit | doc=%s query=%r", document_id, cleaned)
                return response

        result = await self._index.search(document_id, self._index_request(cleaned, options, limit))
        hits = [_to_hit(raw) for raw in result.hits]

        response = SearchResponse(
            document=_document_context(doc),
            hits=hits,
            pagination=Pagination.build(options.offset, limit, result.estimated_total),
            search_metadata=SearchMetadata(
                original_query=query,
                cleaned_query=cleaned,
                search_time_ms=result.processing_time_ms,
                cached=False,
                timestamp=datetime.now(timezone.utc),
            ),
        )

        if hits:
            await self._cache.set(key, response.model_dump(mode="json"), ttl=self._settings.cache_ttl_seconds)

        logger.info(
            "Search | doc=%s query=%r hits=%d total=%d time_ms=%d",
            document_id, cleaned, len(hits), result.estimated_total, result.processing_time_ms,
        )
        return response

    async def suggestions(
        self,
        document_id: UUID,
        query:       str,
        limit:       int = DEFAULT_SUGGESTION_LIMIT,
    ) -> list[str]:
        """
        Candidate words from matching content that start with the query or
        contain one of its tokens. Longer than two characters, de-duplicated.
        """
        cleaned = self._validate_query(query)
        await self._ready_document(document_id)

        result = await self._index.search(
            document_id,
            IndexSearchRequest(
                query=cleaned,
                limit=max(limit * 2, 10),
                crop_length=self._settings.search_crop_length,
            ),
        )

        tokens = [t for t in cleaned.split() if len(t) >= self._settings.search_min_query_length]
        suggestions: list[str] = []
        for hit in result.hits:
            for word in _WORD_RE.findall(str(hit.get("content", "")).lower()):
                if len(word) <= 2 or word in suggestions:
                    continue
                if word.startswith(cleaned) or any(token in word for token in tokens):
                    suggestions.append(word)
                    if len(suggestions) >= limit:
                        return suggestions
        return suggestions

    async def document_stats(self, document_id: UUID) -> DocumentStatsResponse:
        doc = await self._store.require_document(document_id)
        chunks = await self._store.get_chunks(document_id)
        return DocumentStatsResponse(document=_document_context(doc), stats=analyze_chunks(chunks))

    async def invalidate_cache(self, document_id: UUID) -> int:
        await self._store.require_document(document_id)
        return await self._cache.purge_document(document_id)

    async def health(self) -> dict[str, Any]:
        index_health = await self._index.health()
        cache_health = await self._cache.ping()
        # Cache is optional; only the index decides overall health.
        status = "ok" if index_health.get("status") == "ok" else "degraded"
        return {"status": status, "index": index_health, "cache": cache_health}
