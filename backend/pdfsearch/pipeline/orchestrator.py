"""
Pipeline Orchestrator — one processing run for one document.

  load ──► completed? ──► no-op (duplicate delivery)
    │
    ├──► failed?    ──► skip (terminal until reprocess)
    │
    ▼
  processing ──► extract (+OCR) ──► replace chunks ──► rebuild index ──► completed
                                                                    └──► purge search cache

Failure semantics:
  Any exception after the document enters `processing` propagates to the
  caller (the Celery task), which owns the retry policy. The orchestrator
  never marks a document failed on its own; mark_failed() is called by the
  task once retries are exhausted or the payload is unusable.

Exclusivity:
  The queue delivers a job to one worker at a time, so there is no
  application-level locking here.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from pdfsearch.core.errors import NotFoundError, ValidationError
from pdfsearch.models.documents import Document
from pdfsearch.pipeline.lifecycle import DocumentStatus, can_transition
from pdfsearch.processing.extractor import ChunkExtractor
from pdfsearch.schemas.documents import ParsedContent
from pdfsearch.search.cache import SearchCache
from pdfsearch.search.index import SearchIndexBase, to_index_document
from pdfsearch.store.metadata import MetadataStore

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


class ProgressStage(str, Enum):
    QUEUED             = "queued"
    EXTRACTION_STARTED = "extraction_started"
    EXTRACTION_DONE    = "extraction_done"
    PERSISTED          = "persisted"
    INDEXING_DONE      = "indexing_done"
    COMPLETED          = "completed"


PROGRESS_PERCENT: dict[ProgressStage, int] = {
    ProgressStage.QUEUED:             0,
    ProgressStage.EXTRACTION_STARTED: 10,
    ProgressStage.EXTRACTION_DONE:    50,
    ProgressStage.PERSISTED:          70,
    ProgressStage.INDEXING_DONE:      90,
    ProgressStage.COMPLETED:          100,
}

ProgressCallback = Callable[[ProgressStage, int], Optional[Awaitable[None]]]


@dataclass
class ProcessingResult:
    document_id: str
    status:      str       # completed | already_processed | skipped
    chunks:      int = 0
    pages:       int = 0
    skipped:     int = 0   # records dropped as too short
    failed:      int = 0   # records that could not be extracted
    elapsed_ms:  int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class PipelineOrchestrator:
    """
    Stateless service object — all dependencies are injected.

    Usage:
        orchestrator = PipelineOrchestrator(store, extractor, index, cache)
        result = await orchestrator.process(document_id, parsed_content)
    """

    def __init__(
        self,
        store:     MetadataStore,
        extractor: ChunkExtractor,
        index:     SearchIndexBase,
        cache:     SearchCache | None = None,
    ) -> None:
        self._store     = store
        self._extractor = extractor
        self._index     = index
        self._cache     = cache

    async def process(
        self,
        document_id: UUID,
        content:     ParsedContent | Mapping[str, Any],
        progress:    ProgressCallback | None = None,
    ) -> ProcessingResult:
        t0 = time.monotonic()

        doc = await self._store.get_document(document_id)
        if doc is None:
            raise NotFoundError(document_id)

        if doc.status == DocumentStatus.COMPLETED.value:
            logger.info("Already processed, skipping | doc=%s", document_id)
            return ProcessingResult(
                document_id=str(document_id),
                status="already_processed",
                chunks=doc.total_chunks,
                pages=doc.total_pages,
            )
        if doc.status == DocumentStatus.FAILED.value:
            logger.warning("Document is failed; reprocess required | doc=%s", document_id)
            return ProcessingResult(document_id=str(document_id), status="skipped")

        parsed = self._parse_content(content)

        await self._store.transition(document_id, DocumentStatus.PROCESSING)
        await self._report(progress, ProgressStage.EXTRACTION_STARTED)

        extraction = await self._extractor.extract(parsed)
        await self._report(progress, ProgressStage.EXTRACTION_DONE)

        doc, rows = await self._store.replace_chunks(document_id, extraction.chunks)
        await self._report(progress, ProgressStage.PERSISTED)

        await self._index.rebuild(document_id, [to_index_document(row) for row in rows])
        await self._report(progress, ProgressStage.INDEXING_DONE)

        await self._store.transition(document_id, DocumentStatus.COMPLETED)
        if self._cache is not None:
            await self._cache.purge_document(document_id)
        await self._report(progress, ProgressStage.COMPLETED)

        result = ProcessingResult(
            document_id=str(document_id),
            status=DocumentStatus.COMPLETED.value,
            chunks=doc.total_chunks,
            pages=doc.total_pages,
            skipped=extraction.skipped,
            failed=extraction.failed,
            elapsed_ms=int((time.monotonic() - t0) * 1000),
        )
        logger.info(
            "Processing complete | doc=%s chunks=%d pages=%d skipped=%d failed=%d elapsed_ms=%d",
            document_id, result.chunks, result.pages, result.skipped, result.failed, result.elapsed_ms,
        )
        return result

    async def mark_failed(self, document_id: UUID, error: str) -> Document | None:
        """Record a terminal failure. No-op for unknown or already-terminal documents."""
        doc = await self._store.get_document(document_id)
        if doc is None:
            logger.error("Cannot mark unknown document failed | doc=%s", document_id)
            return None
        if doc.status == DocumentStatus.FAILED.value:
            return doc
        if not can_transition(doc.status, DocumentStatus.FAILED):
            logger.warning(
                "Not marking failed | doc=%s status=%s error=%s", document_id, doc.status, error,
            )
            return doc

        logger.error("Processing failed | doc=%s error=%s", document_id, error)
        return await self._store.transition(
            document_id, DocumentStatus.FAILED, error=error[:_MAX_ERROR_LENGTH],
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_content(content: ParsedContent | Mapping[str, Any]) -> ParsedContent:
        if isinstance(content, ParsedContent):
            return content
        try:
            return ParsedContent.model_validate(content)
        except PydanticValidationError as exc:
            raise ValidationError(f"Job content is not valid parsed content: {exc}") from exc

    @staticmethod
    async def _report(progress: ProgressCallback | None, stage: ProgressStage) -> None:
        """Progress is observability only; a failing callback never affects the run."""
        if progress is None:
            return
        try:
            outcome = progress(stage, PROGRESS_PERCENT[stage])
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.debug("Progress callback failed | stage=%s error=%s", stage.value, exc)
