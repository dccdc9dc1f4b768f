"""
Document API Router

POST   /api/v1/documents/upload              multipart file + parsed_content → 202
GET    /api/v1/documents                     list with filters, sort, pagination
GET    /api/v1/documents/{id}                one document summary
GET    /api/v1/documents/{id}/status         lifecycle status + queue counters
GET    /api/v1/documents/{id}/content        extracted chunks (completed only)
POST   /api/v1/documents/{id}/reprocess      completed | failed → pending, re-enqueued
DELETE /api/v1/documents/{id}                index, cache, stored objects and records

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Parse the parsed_content / metadata JSON form fields  │
  │ 2. Size guard on the file part before reading it         │
  │ 3. IngestionService: %PDF check, record, S3, enqueue     │
  │ 4. 202 + Location of the status endpoint                 │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse

from pdfsearch.api.dependencies import Context, Ingestion, Queue, Store
from pdfsearch.core.errors import NotReadyError
from pdfsearch.pipeline.lifecycle import DocumentStatus
from pdfsearch.schemas.documents import (
    ChunkKind,
    ChunkResponse,
    DeleteResponse,
    DocumentContentResponse,
    DocumentListResponse,
    DocumentStatusResponse,
    DocumentSummary,
    DocumentUploadResponse,
    ErrorResponse,
    Pagination,
    ReprocessResponse,
    UploadErrors,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_STATUS_PROGRESS = {
    DocumentStatus.PENDING.value:   0,
    DocumentStatus.COMPLETED.value: 100,
}


def _parse_json_field(field: str, raw: str | None, *, required: bool) -> dict[str, Any] | None:
    if raw is None or not raw.strip():
        if required:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_json(field, "Field is required.").model_dump(),
            )
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.invalid_json(field, str(exc)).model_dump(),
        ) from exc
    if not isinstance(value, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.invalid_json(field, "Expected a JSON object.").model_dump(),
        )
    return value


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a PDF with its parsed content",
    description=(
        "Accepts a PDF and the upstream parser's output as JSON. "
        "Returns 202 immediately; processing is asynchronous. "
        "Poll GET /documents/{id}/status for pipeline progress."
    ),
    responses={
        202: {"model": DocumentUploadResponse, "description": "File accepted for processing"},
        400: {"model": ErrorResponse, "description": "Not a PDF, empty file or malformed JSON field"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload size limit"},
    },
)
async def upload_document(
    context:        Context,
    ingestion:      Ingestion,
    file:           UploadFile    = File(..., description="PDF file"),
    parsed_content: str           = Form(..., description="JSON object: {paragraphs, images, tables}"),
    metadata:       Optional[str] = Form(None, description="Optional JSON object stored with the document"),
) -> JSONResponse:
    content = _parse_json_field("parsed_content", parsed_content, required=True)
    extra   = _parse_json_field("metadata", metadata, required=False)

    limit = context.settings.max_upload_bytes
    if file.size is not None and file.size > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=UploadErrors.file_too_large(file.size, limit).model_dump(),
        )

    data = await file.read()
    result = await ingestion.register_upload(file.filename, data, content, extra)

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(result.document_id),
            "Location":      f"/api/v1/documents/{result.document_id}/status",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents  — list documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List documents",
)
async def list_documents(
    store:           Store,
    context:         Context,
    status_filter:   Optional[DocumentStatus] = Query(None, alias="status"),
    uploaded_after:  Optional[datetime] = None,
    uploaded_before: Optional[datetime] = None,
    sort_by:         str = Query("upload_time", pattern="^(upload_time|filename|file_size|status|total_chunks)$"),
    sort_order:      str = Query("desc", pattern="^(asc|desc)$"),
    limit:           int = Query(20, ge=1),
    offset:          int = Query(0, ge=0),
) -> DocumentListResponse:
    limit = min(limit, context.settings.search_max_limit)
    docs, total = await store.list_documents(
        status=status_filter,
        uploaded_after=uploaded_after,
        uploaded_before=uploaded_before,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    return DocumentListResponse(
        documents=[DocumentSummary.from_document(doc) for doc in docs],
        pagination=Pagination.build(offset, limit, total),
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentSummary,
    responses={404: {"model": ErrorResponse}},
)
async def get_document(document_id: UUID, store: Store) -> DocumentSummary:
    return DocumentSummary.from_document(await store.require_document(document_id))


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll async processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(document_id: UUID, store: Store, queue: Queue) -> DocumentStatusResponse:
    doc = await store.require_document(document_id)

    # Cached snapshot only (written by the beat task); None until one exists.
    queue_stats = await queue.stats()

    return DocumentStatusResponse(
        document_id=doc.id,
        status=DocumentStatus(doc.status),
        error=doc.error,
        attempts=doc.attempts,
        total_pages=doc.total_pages,
        total_chunks=doc.total_chunks,
        progress=_STATUS_PROGRESS.get(doc.status),
        updated_at=doc.updated_at,
        queue=queue_stats,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/content
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/content",
    response_model=DocumentContentResponse,
    summary="Extracted chunks of a processed document",
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def get_document_content(
    document_id: UUID,
    store:       Store,
    context:     Context,
    kind:        Optional[ChunkKind] = Query(None, alias="type"),
    page:        Optional[int] = Query(None, ge=1),
    limit:       int = Query(50, ge=1),
    offset:      int = Query(0, ge=0),
) -> DocumentContentResponse:
    doc = await store.require_document(document_id)
    if doc.status != DocumentStatus.COMPLETED.value:
        raise NotReadyError(document_id, doc.status)

    limit = min(limit, context.settings.search_max_limit)
    chunks = await store.get_chunks(document_id, kind=kind, page=page, limit=limit, offset=offset)
    total  = await store.count_chunks(document_id, kind=kind, page=page)

    return DocumentContentResponse(
        document_id=document_id,
        chunks=[ChunkResponse.from_chunk(chunk) for chunk in chunks],
        pagination=Pagination.build(offset, limit, total),
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reprocess_document(document_id: UUID, ingestion: Ingestion) -> ReprocessResponse:
    return await ingestion.reprocess(document_id)


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    response_model=DeleteResponse,
    responses={404: {"model": ErrorResponse}},
)
async def delete_document(document_id: UUID, ingestion: Ingestion) -> DeleteResponse:
    return await ingestion.delete(document_id)
