"""
Metadata Store — durable Document and Chunk records.

Every public method opens its own session and transaction, so the store can
be shared by concurrent request handlers and by the worker without any
session plumbing in the callers.

Invariants maintained here:
  - Status changes go through the lifecycle guard (pipeline/lifecycle.py).
  - `error` is only ever non-null while status == failed.
  - Replacing a document's chunks is one transaction: old rows deleted, new
    rows inserted, total_chunks / total_pages recounted from the table.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pdfsearch.core.errors import NotFoundError
from pdfsearch.models.documents import Chunk, Document, _utcnow
from pdfsearch.pipeline.lifecycle import DocumentStatus, ensure_transition

logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS = {
    "upload_time":  Document.upload_time,
    "filename":     Document.original_name,
    "file_size":    Document.file_size,
    "status":       Document.status,
    "total_chunks": Document.total_chunks,
}


class MetadataStore:

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(
        self,
        *,
        original_name: str,
        file_size:     int,
        mime_type:     str = "application/pdf",
        metadata:      dict[str, Any] | None = None,
        document_id:   uuid.UUID | None = None,
        storage_key:   str | None = None,
    ) -> Document:
        document_id = document_id or uuid.uuid4()
        doc = Document(
            id=document_id,
            filename=storage_key or f"documents/{document_id}/source.pdf",
            original_name=original_name,
            file_size=file_size,
            mime_type=mime_type,
            status=DocumentStatus.PENDING.value,
            attempts=0,
            total_pages=0,
            total_chunks=0,
            doc_metadata=metadata or {},
        )
        async with self._sessions() as session:
            async with session.begin():
                session.add(doc)
        logger.info("Document created | doc=%s file=%s size=%d", document_id, original_name, file_size)
        return doc

    async def get_document(self, document_id: uuid.UUID) -> Document | None:
        async with self._sessions() as session:
            return await session.get(Document, document_id)

    async def require_document(self, document_id: uuid.UUID) -> Document:
        doc = await self.get_document(document_id)
        if doc is None:
            raise NotFoundError(document_id)
        return doc

    async def list_documents(
        self,
        *,
        status:          DocumentStatus | None = None,
        uploaded_after:  datetime | None = None,
        uploaded_before: datetime | None = None,
        sort_by:         str = "upload_time",
        sort_order:      str = "desc",
        limit:           int = 20,
        offset:          int = 0,
    ) -> tuple[list[Document], int]:
        """Return one page of documents plus the total matching the filters."""
        filters = []
        if status is not None:
            filters.append(Document.status == DocumentStatus(status).value)
        if uploaded_after is not None:
            filters.append(Document.upload_time >= uploaded_after)
        if uploaded_before is not None:
            filters.append(Document.upload_time <= uploaded_before)

        column = _SORTABLE_COLUMNS.get(sort_by, Document.upload_time)
        ordering = column.asc() if sort_order == "asc" else column.desc()

        async with self._sessions() as session:
            total = await session.scalar(
                select(func.count()).select_from(Document).where(*filters)
            )
            result = await session.execute(
                select(Document)
                .where(*filters)
                .order_by(ordering, Document.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), int(total or 0)

    async def transition(
        self,
        document_id: uuid.UUID,
        target:      DocumentStatus,
        *,
        error:       str | None = None,
    ) -> Document:
        """
        Move a document to `target`, enforcing the lifecycle guard.

        Entering processing counts one attempt; re-entering pending (reprocess)
        resets the counter. The error message is kept only for failed.
        """
        target = DocumentStatus(target)
        async with self._sessions() as session:
            async with session.begin():
                doc = await session.get(Document, document_id, with_for_update=True)
                if doc is None:
                    raise NotFoundError(document_id)

                previous = doc.status
                ensure_transition(previous, target)

                doc.status = target.value
                doc.error  = error if target is DocumentStatus.FAILED else None
                if target is DocumentStatus.PROCESSING:
                    doc.attempts += 1
                elif target is DocumentStatus.PENDING:
                    doc.attempts = 0

        logger.info(
            "Status transition | doc=%s %s -> %s attempts=%d",
            document_id, previous, target.value, doc.attempts,
        )
        return doc

    async def delete_document(self, document_id: uuid.UUID) -> bool:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(delete(Chunk).where(Chunk.document_id == document_id))
                result = await session.execute(delete(Document).where(Document.id == document_id))
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Document deleted | doc=%s", document_id)
        return deleted

    async def find_stale(
        self,
        status:     DocumentStatus,
        older_than: datetime,
        limit:      int = 50,
    ) -> list[Document]:
        """Documents that have sat in `status` since before `older_than`."""
        async with self._sessions() as session:
            result = await session.execute(
                select(Document)
                .where(
                    Document.status == DocumentStatus(status).value,
                    Document.updated_at < older_than,
                )
                .order_by(Document.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def assign_job(self, document_id: uuid.UUID, job_id: str | None) -> None:
        """
        Name the job allowed to process the document (None = no live job).
        Also restarts the stale clock, so recovery leaves a fresh dispatch alone.
        """
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(Document)
                    .where(Document.id == document_id)
                    .values(job_id=job_id, updated_at=_utcnow())
                )

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def replace_chunks(
        self,
        document_id: uuid.UUID,
        candidates:  Iterable[Any],
    ) -> tuple[Document, list[Chunk]]:
        """
        Swap the document's chunks for `candidates` and recount its totals.

        Candidates are extractor chunks (ParagraphChunk | ImageChunk | TableChunk).
        """
        async with self._sessions() as session:
            async with session.begin():
                doc = await session.get(Document, document_id, with_for_update=True)
                if doc is None:
                    raise NotFoundError(document_id)

                await session.execute(delete(Chunk).where(Chunk.document_id == document_id))

                rows = [
                    Chunk(
                        id=uuid.uuid4(),
                        document_id=document_id,
                        kind=candidate.kind,
                        content=candidate.content,
                        page_number=candidate.page_number,
                        position=candidate.position,
                        ocr_confidence=candidate.ocr_confidence,
                        chunk_metadata=candidate.metadata,
                    )
                    for candidate in candidates
                ]
                session.add_all(rows)
                await session.flush()

                count, max_page = (
                    await session.execute(
                        select(
                            func.count(Chunk.id),
                            func.coalesce(func.max(Chunk.page_number), 0),
                        ).where(Chunk.document_id == document_id)
                    )
                ).one()
                doc.total_chunks = int(count)
                doc.total_pages  = int(max_page)

        logger.info(
            "Chunks replaced | doc=%s chunks=%d pages=%d",
            document_id, doc.total_chunks, doc.total_pages,
        )
        return doc, rows

    async def get_chunks(
        self,
        document_id: uuid.UUID,
        *,
        kind:   str | None = None,
        page:   int | None = None,
        limit:  int | None = None,
        offset: int = 0,
    ) -> Sequence[Chunk]:
        stmt = (
            select(Chunk)
            .where(*self._chunk_filters(document_id, kind, page))
            .order_by(Chunk.page_number, Chunk.created_at, Chunk.id)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def count_chunks(
        self,
        document_id: uuid.UUID,
        *,
        kind: str | None = None,
        page: int | None = None,
    ) -> int:
        async with self._sessions() as session:
            total = await session.scalar(
                select(func.count(Chunk.id)).where(*self._chunk_filters(document_id, kind, page))
            )
            return int(total or 0)

    @staticmethod
    def _chunk_filters(document_id: uuid.UUID, kind: str | None, page: int | None) -> list:
        filters = [Chunk.document_id == document_id]
        if kind is not None:
            filters.append(Chunk.kind == getattr(kind, "value", kind))
        if page is not None:
            filters.append(Chunk.page_number == page)
        return filters
