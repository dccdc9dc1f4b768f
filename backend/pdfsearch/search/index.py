"""
Search Index — Per-Document Meilisearch Indexes

Isolation model:
  Every document gets its own index: "<index_prefix>_<document_id>".
  A search can only ever touch the index derived from the document id it
  was asked about; there is no cross-document query on this interface.

Index lifecycle:
  rebuild() = delete → create → configure → add (one batch)
  A reprocessed document therefore never keeps stale entries from an
  earlier run: the old index is gone before the new one is filled.

Expected, non-fatal conditions (logged and swallowed):
  index_already_exists  on create
  index_not_found       on delete / search

Everything else (unreachable server, task failure, task timeout) is
raised as DependencyError so the pipeline can retry the run.

The official SDK is synchronous; calls run in the default thread executor.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, TypeVar
from uuid import UUID

import meilisearch
from meilisearch.errors import MeilisearchApiError, MeilisearchError

from pdfsearch.core.config import Settings
from pdfsearch.core.errors import DependencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

INDEX_ALREADY_EXISTS = "index_already_exists"
INDEX_NOT_FOUND      = "index_not_found"

STOP_WORDS: tuple[str, ...] = (
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "were", "be", "been",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "shall",
)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class IndexSettings:
    searchable_attributes: list[str] = field(default_factory=lambda: ["content", "metadata"])
    filterable_attributes: list[str] = field(
        default_factory=lambda: ["documentId", "type", "pageNumber", "ocrConfidence"]
    )
    sortable_attributes: list[str] = field(
        default_factory=lambda: ["pageNumber", "createdAt", "ocrConfidence"]
    )
    ranking_rules: list[str] = field(
        default_factory=lambda: ["words", "typo", "proximity", "attribute", "sort", "exactness"]
    )
    stop_words: list[str] = field(default_factory=lambda: list(STOP_WORDS))

    def to_meilisearch(self) -> dict[str, Any]:
        return {
            "searchableAttributes": self.searchable_attributes,
            "filterableAttributes": self.filterable_attributes,
            "sortableAttributes":   self.sortable_attributes,
            "rankingRules":         self.ranking_rules,
            "stopWords":            self.stop_words,
        }


@dataclass
class IndexSearchRequest:
    query:             str
    limit:             int
    offset:            int = 0
    kind:              str | None = None
    page:              int | None = None
    min_confidence:    float | None = None
    sort_by:           str | None = None
    sort_order:        str = "asc"
    highlight_pre_tag:  str = "<mark>"
    highlight_post_tag: str = "</mark>"
    crop_length:       int = 50


@dataclass
class IndexSearchResult:
    hits:               list[dict[str, Any]]
    estimated_total:    int
    processing_time_ms: int


def to_index_document(chunk: Any) -> dict[str, Any]:
    """Stored Chunk row → index document (camelCase, createdAt in epoch ms)."""
    created_at: datetime = chunk.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return {
        "id":            str(chunk.id),
        "documentId":    str(chunk.document_id),
        "type":          chunk.kind,
        "content":       chunk.content,
        "pageNumber":    chunk.page_number,
        "position":      chunk.position,
        "ocrConfidence": chunk.ocr_confidence,
        "metadata":      chunk.chunk_metadata or {},
        "createdAt":     int(created_at.timestamp() * 1000),
    }


def build_filters(request: IndexSearchRequest) -> list[str]:
    """Filter expressions; a list means AND."""
    filters: list[str] = []
    if request.kind:
        filters.append(f'type = "{request.kind}"')
    if request.page is not None:
        filters.append(f"pageNumber = {int(request.page)}")
    if request.min_confidence is not None:
        filters.append(f"ocrConfidence >= {float(request.min_confidence)}")
    return filters


def build_search_params(request: IndexSearchRequest) -> dict[str, Any]:
    params: dict[str, Any] = {
        "limit":                 request.limit,
        "offset":                request.offset,
        "attributesToHighlight": ["content"],
        "highlightPreTag":       request.highlight_pre_tag,
        "highlightPostTag":      request.highlight_post_tag,
        "attributesToCrop":      [f"content:{request.crop_length}"],
        "cropMarker":            "...",
        "showMatchesPosition":   True,
        "matchingStrategy":      "all",
    }
    filters = build_filters(request)
    if filters:
        params["filter"] = filters
    if request.sort_by:
        params["sort"] = [f"{request.sort_by}:{request.sort_order}"]
    return params


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class SearchIndexBase(ABC):
    """
    Per-document index interface. Implementations must treat
    already-exists on create and not-found on delete/search as no-ops.
    """

    def __init__(self, prefix: str = "pdf_search") -> None:
        self._prefix = prefix

    def index_uid(self, document_id: UUID | str) -> str:
        return f"{self._prefix}_{document_id}"

    @abstractmethod
    async def create_index(self, document_id: UUID | str) -> None:
        ...

    @abstractmethod
    async def configure(self, document_id: UUID | str, settings: IndexSettings | None = None) -> None:
        ...

    @abstractmethod
    async def add_documents(self, document_id: UUID | str, documents: list[dict[str, Any]]) -> int:
        """Submit all documents as one batch. Returns the number submitted."""

    @abstractmethod
    async def search(self, document_id: UUID | str, request: IndexSearchRequest) -> IndexSearchResult:
        ...

    @abstractmethod
    async def delete_index(self, document_id: UUID | str) -> None:
        ...

    @abstractmethod
    async def health(self) -> dict[str, Any]:
        ...

    async def rebuild(self, document_id: UUID | str, documents: list[dict[str, Any]]) -> int:
        """Drop and recreate the document's index, then fill it."""
        await self.delete_index(document_id)
        await self.create_index(document_id)
        await self.configure(document_id)
        added = await self.add_documents(document_id, documents)
        logger.info("Index rebuilt | index=%s documents=%d", self.index_uid(document_id), added)
        return added


# ---------------------------------------------------------------------------
# Meilisearch implementation
# ---------------------------------------------------------------------------

class MeilisearchIndex(SearchIndexBase):

    def __init__(
        self,
        client:          meilisearch.Client,
        prefix:          str = "pdf_search",
        task_timeout_ms: int = 30_000,
    ) -> None:
        super().__init__(prefix)
        self._client     = client
        self._timeout_ms = task_timeout_ms

    @classmethod
    def from_settings(cls, settings: Settings) -> "MeilisearchIndex":
        client = meilisearch.Client(settings.meilisearch_url, settings.meilisearch_api_key or None)
        return cls(
            client,
            prefix=settings.index_prefix,
            task_timeout_ms=settings.meilisearch_task_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    def _execute_task(self, operation: str, uid: str, submit: Callable[[], Any], ignore: frozenset[str]) -> None:
        """Submit an async index task and block until it finishes."""
        try:
            info = submit()
            task = self._client.wait_for_task(info.task_uid, timeout_in_ms=self._timeout_ms)
        except MeilisearchApiError as exc:
            if exc.code in ignore:
                logger.debug("Index %s skipped | index=%s code=%s", operation, uid, exc.code)
                return
            raise DependencyError("meilisearch", f"{operation} {uid} failed: {exc}") from exc
        except MeilisearchError as exc:
            raise DependencyError("meilisearch", f"{operation} {uid} failed: {exc}") from exc

        if task.status == "failed":
            error = task.error or {}
            code = error.get("code")
            if code in ignore:
                logger.debug("Index %s skipped | index=%s code=%s", operation, uid, code)
                return
            raise DependencyError(
                "meilisearch",
                f"{operation} {uid} task {task.uid} failed: {code}: {error.get('message')}",
            )

    # ------------------------------------------------------------------
    # SearchIndexBase
    # ------------------------------------------------------------------

    async def create_index(self, document_id: UUID | str) -> None:
        uid = self.index_uid(document_id)
        await self._run(
            self._execute_task,
            "create",
            uid,
            lambda: self._client.create_index(uid, {"primaryKey": "id"}),
            frozenset({INDEX_ALREADY_EXISTS}),
        )

    async def configure(self, document_id: UUID | str, settings: IndexSettings | None = None) -> None:
        uid = self.index_uid(document_id)
        body = (settings or IndexSettings()).to_meilisearch()
        await self._run(
            self._execute_task,
            "configure",
            uid,
            lambda: self._client.index(uid).update_settings(body),
            frozenset(),
        )

    async def add_documents(self, document_id: UUID | str, documents: list[dict[str, Any]]) -> int:
        if not documents:
            return 0
        uid = self.index_uid(document_id)
        await self._run(
            self._execute_task,
            "add_documents",
            uid,
            lambda: self._client.index(uid).add_documents(documents, primary_key="id"),
            frozenset(),
        )
        return len(documents)

    async def delete_index(self, document_id: UUID | str) -> None:
        uid = self.index_uid(document_id)
        await self._run(
            self._execute_task,
            "delete",
            uid,
            lambda: self._client.delete_index(uid),
            frozenset({INDEX_NOT_FOUND}),
        )

    async def search(self, document_id: UUID | str, request: IndexSearchRequest) -> IndexSearchResult:
        uid = self.index_uid(document_id)
        params = build_search_params(request)
        try:
            raw = await self._run(self._client.index(uid).search, request.query, params)
        except MeilisearchApiError as exc:
            if exc.code == INDEX_NOT_FOUND:
                logger.warning("Search on missing index | index=%s", uid)
                return IndexSearchResult(hits=[], estimated_total=0, processing_time_ms=0)
            raise DependencyError("meilisearch", f"search {uid} failed: {exc}") from exc
        except MeilisearchError as exc:
            raise DependencyError("meilisearch", f"search {uid} failed: {exc}") from exc

        return IndexSearchResult(
            hits=list(raw.get("hits", [])),
            estimated_total=int(raw.get("estimatedTotalHits", raw.get("totalHits", 0)) or 0),
            processing_time_ms=int(raw.get("processingTimeMs", 0) or 0),
        )

    async def health(self) -> dict[str, Any]:
        try:
            result = await self._run(self._client.health)
        except MeilisearchError as exc:
            logger.error("Meilisearch health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}
        return {"status": "ok" if result.get("status") == "available" else "error", "detail": result}
