"""
Document Ingestion Service

Orchestrates the upload pipeline:
  1. Validate the file (non-empty, size limit, %PDF magic bytes)
  2. Validate the parsed content shape
  3. Store the PDF and its parsed content in S3
  4. Insert the document record (status=pending), keyed to the stored PDF
  5. Publish the processing job
  6. Return 202 with the document summary

Also owns the two other write paths on a document:
  reprocess  completed | failed → pending, then re-enqueue from stored content
  delete     index, cached searches, stored objects, then the records themselves

S3 writes happen before the record exists, so a storage outage leaves no
pending row behind (orphan objects under an unused id are harmless). Queue
failures after the record exists are non-fatal: the document stays pending
with no job and the recovery beat task dispatches one.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from fastapi import HTTPException, status
from kombu.exceptions import KombuError
from pydantic import ValidationError as PydanticValidationError

from pdfsearch.core.config import Settings
from pdfsearch.core.errors import ValidationError
from pdfsearch.pipeline.lifecycle import DocumentStatus
from pdfsearch.schemas.documents import (
    PDF_MAGIC,
    DeleteResponse,
    DocumentUploadResponse,
    ParsedContent,
    ReprocessResponse,
    UploadErrors,
)
from pdfsearch.search.cache import SearchCache
from pdfsearch.search.index import SearchIndexBase
from pdfsearch.storage.s3 import S3DocumentStorage
from pdfsearch.store.metadata import MetadataStore
from pdfsearch.workers.queue import JobQueue, dispatch

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9._\- ]")


def sanitize_filename(filename: str | None) -> str:
    """Basename only, unsafe characters replaced, capped at 200 chars."""
    basename = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    safe = _UNSAFE_FILENAME_RE.sub("_", basename)[:200]
    return safe or "upload.pdf"


class IngestionService:
    """
    Stateless service object — all dependencies are injected.
    """

    def __init__(
        self,
        store:    MetadataStore,
        files:    S3DocumentStorage,
        queue:    JobQueue,
        index:    SearchIndexBase,
        cache:    SearchCache,
        settings: Settings,
    ) -> None:
        self._store    = store
        self._files    = files
        self._queue    = queue
        self._index    = index
        self._cache    = cache
        self._settings = settings

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def register_upload(
        self,
        filename:       str | None,
        data:           bytes,
        parsed_content: dict[str, Any],
        metadata:       dict[str, Any] | None = None,
    ) -> DocumentUploadResponse:
        # ---- Step 1: File checks ----------------------------------------
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )
        if len(data) > self._settings.max_upload_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=UploadErrors.file_too_large(len(data), self._settings.max_upload_bytes).model_dump(),
            )
        safe_name = sanitize_filename(filename)
        if not data.startswith(PDF_MAGIC):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.not_a_pdf(safe_name).model_dump(),
            )

        # ---- Step 2: Content shape ---------------------------------------
        try:
            parsed = ParsedContent.model_validate(parsed_content)
        except PydanticValidationError as exc:
            raise ValidationError(
                "parsed_content must be an object with paragraphs, images and tables lists.",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        # ---- Step 3: Objects ---------------------------------------------
        document_id = uuid.uuid4()
        stored = await self._files.put_upload(document_id, data)
        await self._files.put_content(document_id, parsed_content)

        # ---- Step 4: Record ----------------------------------------------
        doc = await self._store.create_document(
            document_id=document_id,
            original_name=safe_name,
            file_size=len(data),
            mime_type="application/pdf",
            metadata=metadata,
            storage_key=stored.key,
        )

        # ---- Step 5: Enqueue ---------------------------------------------
        job_id = await self._try_enqueue(document_id)

        logger.info(
            "Upload accepted | doc=%s file=%s size=%d records=%d job=%s",
            document_id, safe_name, len(data), parsed.record_count, job_id,
        )
        return DocumentUploadResponse(
            document_id=document_id,
            filename=safe_name,
            file_size=len(data),
            status=DocumentStatus.PENDING,
            job_id=job_id,
            records=parsed.record_count,
            upload_time=doc.upload_time,
        )

    # ------------------------------------------------------------------
    # Reprocess
    # ------------------------------------------------------------------

    async def reprocess(self, document_id: uuid.UUID) -> ReprocessResponse:
        """Only completed or failed documents; InvalidTransitionError (409) otherwise."""
        await self._store.require_document(document_id)
        if await self._files.get_content(document_id) is None:
            raise ValidationError(
                "No stored parsed content for this document; upload it again.",
                details={"document_id": str(document_id)},
            )

        doc = await self._store.transition(document_id, DocumentStatus.PENDING)
        await self._cache.purge_document(document_id)
        job_id = await self._try_enqueue(document_id)

        logger.info("Reprocess requested | doc=%s job=%s", document_id, job_id)
        return ReprocessResponse(document_id=document_id, status=DocumentStatus(doc.status), job_id=job_id)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, document_id: uuid.UUID) -> DeleteResponse:
        await self._store.require_document(document_id)

        await self._index.delete_index(document_id)
        purged = await self._cache.purge_document(document_id)
        removed = await self._files.delete(document_id)
        await self._store.delete_document(document_id)

        logger.info(
            "Document removed | doc=%s cache_entries=%d objects=%d", document_id, purged, removed,
        )
        return DeleteResponse(document_id=document_id, deleted=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _try_enqueue(self, document_id: uuid.UUID) -> str | None:
        try:
            return await dispatch(self._store, self._queue, document_id)
        except (KombuError, OSError) as exc:
            # Pending with no job; recover_stalled_documents dispatches one.
            logger.error("Failed to enqueue processing job | doc=%s error=%s", document_id, exc)
            return None
