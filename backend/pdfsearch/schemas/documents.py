"""
Document & Chunk — Pydantic Schemas

Covers three concerns:
  - Raw parsed-content records as supplied by the upstream PDF parser
    (paragraphs, images, tables), with the alias keys parsers emit.
  - The closed chunk union {paragraph, image, table} produced by extraction.
  - Request/response bodies for the /documents API and the shared
    structured error envelope.

Design decisions:
  - Raw records are validated one at a time by the extractor, so ParsedContent
    keeps them as plain dicts; a single malformed record never rejects the
    whole payload.
  - Minimum content lengths live on the chunk models: a chunk that fails them
    cannot be constructed, and therefore cannot be persisted.
  - ocr_confidence only exists on ImageChunk.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from pdfsearch.pipeline.lifecycle import DocumentStatus


# ---------------------------------------------------------------------------
# Content limits
# ---------------------------------------------------------------------------

MIN_TEXT_CHUNK_LENGTH:  int = 10   # paragraph + table
MIN_IMAGE_CHUNK_LENGTH: int = 6    # OCR text; 5 chars or fewer is noise

PDF_MAGIC: bytes = b"%PDF"


class ChunkKind(str, Enum):
    PARAGRAPH = "paragraph"
    IMAGE     = "image"
    TABLE     = "table"


# ---------------------------------------------------------------------------
# Raw parsed-content records (input to the extractor)
# ---------------------------------------------------------------------------

def _default_page(value: Any) -> Any:
    # Parsers emit 0, "0", null or "" for "unknown page"; all mean page 1.
    # Negative or non-integer values pass through for validation to reject.
    if isinstance(value, str):
        value = value.strip()
    return 1 if value in (None, 0, "", "0") else value


PageNumber = Annotated[int, BeforeValidator(_default_page), Field(ge=1)]


class RawParagraph(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content:     str = Field("", validation_alias=AliasChoices("content", "text"))
    page_number: PageNumber = Field(1, validation_alias=AliasChoices("pageNumber", "page", "page_number"))
    position:    dict[str, Any] | None = Field(None, validation_alias=AliasChoices("position", "bbox"))
    font_info:   dict[str, Any] | None = Field(None, validation_alias=AliasChoices("fontInfo", "font_info"))
    style:       Any = None

    @model_validator(mode="before")
    @classmethod
    def _text_fallback(cls, data: Any) -> Any:
        # "content" and "text" are synonyms; the first one carrying text wins.
        if isinstance(data, dict) and not data.get("content"):
            data = {**data, "content": data.get("text") or ""}
        return data


class RawImage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data:        bytes | None = Field(None, validation_alias=AliasChoices("data", "buffer"))
    page_number: PageNumber = Field(1, validation_alias=AliasChoices("pageNumber", "page", "page_number"))
    position:    dict[str, Any] | None = Field(None, validation_alias=AliasChoices("position", "bbox"))
    format:      str | None = None
    width:       int | None = None
    height:      int | None = None

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value: Any) -> Any:
        """JSON payloads carry image bytes as base64; in-process callers pass bytes."""
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValueError("image data is not valid base64") from exc
        return value


class RawTable(BaseModel):
    model_config = ConfigDict(extra="ignore")

    headers:     list[Any] = Field(default_factory=list)
    rows:        list[list[Any] | dict[str, Any]] = Field(default_factory=list)
    caption:     str | None = None
    page_number: PageNumber = Field(1, validation_alias=AliasChoices("pageNumber", "page", "page_number"))
    position:    dict[str, Any] | None = Field(None, validation_alias=AliasChoices("position", "bbox"))


class ParsedContent(BaseModel):
    """Job payload content: the parser's output for one PDF."""
    model_config = ConfigDict(extra="ignore")

    paragraphs: list[Any] = Field(default_factory=list)
    images:     list[Any] = Field(default_factory=list)
    tables:     list[Any] = Field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.paragraphs) + len(self.images) + len(self.tables)


# ---------------------------------------------------------------------------
# Chunk union (output of the extractor)
# ---------------------------------------------------------------------------

class TextFeatures(BaseModel):
    """Deterministic text statistics stored in chunk metadata (camelCase keys)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    word_count:             int
    sentence_count:         int
    character_count:        int
    avg_words_per_sentence: int
    contains_numbers:       bool
    contains_capitals:      bool


class _ChunkBase(BaseModel):
    content:     str
    page_number: int = Field(1, ge=1)
    position:    dict[str, Any] | None = None
    metadata:    dict[str, Any] = Field(default_factory=dict)


class ParagraphChunk(_ChunkBase):
    kind:    Literal["paragraph"] = "paragraph"
    content: str = Field(..., min_length=MIN_TEXT_CHUNK_LENGTH)

    @property
    def ocr_confidence(self) -> None:
        return None


class ImageChunk(_ChunkBase):
    kind:           Literal["image"] = "image"
    content:        str = Field(..., min_length=MIN_IMAGE_CHUNK_LENGTH)
    ocr_confidence: float = Field(..., ge=0.0, le=100.0)


class TableChunk(_ChunkBase):
    kind:    Literal["table"] = "table"
    content: str = Field(..., min_length=MIN_TEXT_CHUNK_LENGTH)

    @property
    def ocr_confidence(self) -> None:
        return None


ChunkCandidate = Annotated[
    Union[ParagraphChunk, ImageChunk, TableChunk],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Shared pagination block
# ---------------------------------------------------------------------------

class Pagination(BaseModel):
    offset:   int
    limit:    int
    total:    int
    has_more: bool

    @classmethod
    def build(cls, offset: int, limit: int, total: int) -> "Pagination":
        return cls(offset=offset, limit=limit, total=total, has_more=offset + limit < total)


# ---------------------------------------------------------------------------
# Document responses
# ---------------------------------------------------------------------------

class DocumentSummary(BaseModel):
    id:            UUID
    filename:      str
    file_size:     int
    mime_type:     str
    upload_time:   datetime
    status:        DocumentStatus
    error:         str | None = None
    total_pages:   int = 0
    total_chunks:  int = 0
    metadata:      dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Any) -> "DocumentSummary":
        return cls(
            id=doc.id,
            filename=doc.original_name,
            file_size=doc.file_size,
            mime_type=doc.mime_type,
            upload_time=doc.upload_time,
            status=DocumentStatus(doc.status),
            error=doc.error,
            total_pages=doc.total_pages,
            total_chunks=doc.total_chunks,
            metadata=doc.doc_metadata or {},
        )


class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the file is stored but processing is async.
    """
    document_id: UUID            = Field(..., description="Server-generated document UUID")
    filename:    str             = Field(..., description="Sanitized original filename")
    file_size:   int             = Field(..., description="File size in bytes")
    status:      DocumentStatus  = Field(DocumentStatus.PENDING, description="Pipeline state")
    job_id:      str | None      = Field(None, description="Queue job id; null if enqueue failed and will be retried")
    records:     int             = Field(0, description="Raw content records received")
    upload_time: datetime


class QueueStats(BaseModel):
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
    delayed:   int = 0


class DocumentStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    document_id:  UUID
    status:       DocumentStatus
    error:        str | None = None
    attempts:     int = 0
    total_pages:  int = 0
    total_chunks: int = 0
    progress:     int | None = Field(None, description="0 while pending, 100 once completed, null otherwise")
    updated_at:   datetime
    queue:        QueueStats | None = Field(None, description="Queue counters; null if the broker is unreachable")


class DocumentListResponse(BaseModel):
    documents:  list[DocumentSummary]
    pagination: Pagination


class ChunkResponse(BaseModel):
    id:             UUID
    kind:           ChunkKind
    content:        str
    page_number:    int
    position:       dict[str, Any] | None = None
    ocr_confidence: float | None = None
    metadata:       dict[str, Any] = Field(default_factory=dict)
    created_at:     datetime

    @classmethod
    def from_chunk(cls, chunk: Any) -> "ChunkResponse":
        return cls(
            id=chunk.id,
            kind=ChunkKind(chunk.kind),
            content=chunk.content,
            page_number=chunk.page_number,
            position=chunk.position,
            ocr_confidence=chunk.ocr_confidence,
            metadata=chunk.chunk_metadata or {},
            created_at=chunk.created_at,
        )


class DocumentContentResponse(BaseModel):
    document_id: UUID
    chunks:      list[ChunkResponse]
    pagination:  Pagination


class ReprocessResponse(BaseModel):
    document_id: UUID
    status:      DocumentStatus
    job_id:      str | None = None


class DeleteResponse(BaseModel):
    document_id: UUID
    deleted:     bool = True


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class UploadErrors:
    """Factories for upload validation failures (keeps route handlers thin)."""

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and cannot be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def not_a_pdf(filename: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message="Only PDF files are accepted.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' does not start with a PDF header.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def invalid_json(field: str, reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_JSON",
            message=f"Form field '{field}' is not valid JSON.",
            details=[ErrorDetail(field=field, message=reason, code="INVALID_JSON")],
        )
