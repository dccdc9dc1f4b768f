"""
Search — Pydantic Request/Response Schemas

SearchOptions is the full set of knobs that influence a result page; every
field of it takes part in the cache fingerprint.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from pdfsearch.schemas.documents import ChunkKind, Pagination


class SortField(str, Enum):
    """Sortable index attributes."""
    PAGE_NUMBER    = "pageNumber"
    OCR_CONFIDENCE = "ocrConfidence"
    CREATED_AT     = "createdAt"


class SortOrder(str, Enum):
    ASC  = "asc"
    DESC = "desc"


class SearchOptions(BaseModel):
    limit:          int | None       = Field(None, ge=1, description="Page size; capped at the configured maximum")
    offset:         int              = Field(0, ge=0)
    kind:           ChunkKind | None = Field(None, description="Restrict to one chunk kind")
    page:           int | None       = Field(None, ge=1, description="Restrict to one page")
    min_confidence: float | None     = Field(None, ge=0.0, le=100.0, description="Minimum OCR confidence (image chunks)")
    sort_by:        SortField | None = None
    sort_order:     SortOrder        = SortOrder.ASC


class SearchHit(BaseModel):
    id:               str
    document_id:      str
    kind:             ChunkKind
    content:          str
    page_number:      int
    position:         dict[str, Any] | None = None
    ocr_confidence:   float | None = None
    metadata:         dict[str, Any] = Field(default_factory=dict)
    created_at:       int | None = Field(None, description="Epoch milliseconds")
    highlighted:      str | None = Field(None, description="Cropped content with match markers")
    matches_position: dict[str, Any] | None = None


class DocumentContext(BaseModel):
    id:           UUID
    filename:     str
    total_pages:  int
    total_chunks: int


class SearchMetadata(BaseModel):
    original_query: str
    cleaned_query:  str
    search_time_ms: int = Field(0, description="Index processing time for the uncached request")
    cached:         bool = False
    timestamp:      datetime


class SearchResponse(BaseModel):
    document:        DocumentContext
    hits:            list[SearchHit]
    pagination:      Pagination
    search_metadata: SearchMetadata


class SuggestionResponse(BaseModel):
    document_id: UUID
    query:       str
    suggestions: list[str]


class ChunkStats(BaseModel):
    total:                   int = 0
    by_type:                 dict[str, int] = Field(default_factory=dict)
    by_page:                 dict[int, int] = Field(default_factory=dict)
    total_words:             int = 0
    avg_confidence:          float | None = None
    confidence_distribution: dict[str, int] = Field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )


class DocumentStatsResponse(BaseModel):
    document: DocumentContext
    stats:    ChunkStats


class CacheClearResponse(BaseModel):
    document_id: UUID
    cleared:     int


class SearchHealthResponse(BaseModel):
    status: str
    index:  dict[str, Any]
    cache:  dict[str, Any]
