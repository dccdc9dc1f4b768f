"""
Search API — document-scoped full-text search

GET    /api/v1/search/health                   index + cache reachability
GET    /api/v1/search/{id}?q=...               search one document
GET    /api/v1/search/{id}/type/{type}?q=...   search restricted to one chunk kind
GET    /api/v1/search/{id}/page/{page}?q=...   search restricted to one page
GET    /api/v1/search/{id}/suggestions?q=...   completion candidates
GET    /api/v1/search/{id}/stats               chunk statistics
DELETE /api/v1/search/{id}/cache               drop cached result pages

Every search endpoint answers 400 for a query shorter than the configured
minimum, 404 for an unknown document and 422 until the document is completed.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from pdfsearch.api.dependencies import Search
from pdfsearch.schemas.documents import ChunkKind, ErrorResponse
from pdfsearch.schemas.search import (
    CacheClearResponse,
    DocumentStatsResponse,
    SearchHealthResponse,
    SearchOptions,
    SearchResponse,
    SortField,
    SortOrder,
    SuggestionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])

_SEARCH_ERRORS = {
    400: {"model": ErrorResponse, "description": "Query too short"},
    404: {"model": ErrorResponse, "description": "Unknown document"},
    422: {"model": ErrorResponse, "description": "Document not processed yet"},
}


# ---------------------------------------------------------------------------
# GET /search/health
# ---------------------------------------------------------------------------

@router.get("/health", summary="Search dependencies health")
async def search_health(search: Search) -> JSONResponse:
    report = await search.health()
    code = status.HTTP_200_OK if report["status"] == "ok" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(
        status_code=code,
        content=SearchHealthResponse.model_validate(report).model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# GET /search/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=SearchResponse,
    summary="Search within one document",
    responses=_SEARCH_ERRORS,
)
async def search_document(
    document_id:    UUID,
    search:         Search,
    q:              str = Query("", description="Search query"),
    limit:          Optional[int] = Query(None, ge=1),
    offset:         int = Query(0, ge=0),
    kind:           Optional[ChunkKind] = Query(None, alias="type"),
    page:           Optional[int] = Query(None, ge=1),
    min_confidence: Optional[float] = Query(None, ge=0, le=100),
    sort_by:        Optional[SortField] = None,
    sort_order:     SortOrder = SortOrder.ASC,
) -> SearchResponse:
    options = SearchOptions(
        limit=limit,
        offset=offset,
        kind=kind,
        page=page,
        min_confidence=min_confidence,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return await search.search(document_id, q, options)


@router.get(
    "/{document_id}/type/{kind}",
    response_model=SearchResponse,
    summary="Search one chunk kind",
    responses=_SEARCH_ERRORS,
)
async def search_by_kind(
    document_id: UUID,
    kind:        ChunkKind,
    search:      Search,
    q:           str = Query(""),
    limit:       Optional[int] = Query(None, ge=1),
    offset:      int = Query(0, ge=0),
) -> SearchResponse:
    return await search.search(document_id, q, SearchOptions(limit=limit, offset=offset, kind=kind))


@router.get(
    "/{document_id}/page/{page}",
    response_model=SearchResponse,
    summary="Search one page",
    responses=_SEARCH_ERRORS,
)
async def search_by_page(
    document_id: UUID,
    page:        int,
    search:      Search,
    q:           str = Query(""),
    limit:       Optional[int] = Query(None, ge=1),
    offset:      int = Query(0, ge=0),
) -> SearchResponse:
    return await search.search(document_id, q, SearchOptions(limit=limit, offset=offset, page=page))


# ---------------------------------------------------------------------------
# Suggestions / stats / cache
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/suggestions",
    response_model=SuggestionResponse,
    responses=_SEARCH_ERRORS,
)
async def search_suggestions(
    document_id: UUID,
    search:      Search,
    q:           str = Query(""),
    limit:       int = Query(5, ge=1, le=20),
) -> SuggestionResponse:
    suggestions = await search.suggestions(document_id, q, limit=limit)
    return SuggestionResponse(document_id=document_id, query=q, suggestions=suggestions)


@router.get(
    "/{document_id}/stats",
    response_model=DocumentStatsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def document_stats(document_id: UUID, search: Search) -> DocumentStatsResponse:
    return await search.document_stats(document_id)


@router.delete(
    "/{document_id}/cache",
    response_model=CacheClearResponse,
    responses={404: {"model": ErrorResponse}},
)
async def clear_search_cache(document_id: UUID, search: Search) -> CacheClearResponse:
    cleared = await search.invalidate_cache(document_id)
    logger.info("Search cache cleared | doc=%s entries=%d", document_id, cleared)
    return CacheClearResponse(document_id=document_id, cleared=cleared)
