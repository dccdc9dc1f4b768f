"""
SQLAlchemy ORM Models — Documents & Chunks

Mapped classes (2.x style) for full async support. Column types are the
generic SQLAlchemy ones (Uuid, JSON) so the same models run on PostgreSQL
(asyncpg) in production and SQLite (aiosqlite) in tests.

Ownership:
  documents  — one row per uploaded PDF; lifecycle owned by the pipeline
  chunks     — searchable units derived from a document; written once per
               extraction pass, deleted in bulk on reprocess / delete
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks one uploaded PDF from upload → extraction → indexing.

    State machine (status column), see pipeline/lifecycle.py:
        pending    — stored, job enqueued, no worker has started
        processing — a worker is extracting / persisting / indexing
        completed  — chunks persisted and indexed, searchable
        failed     — retries exhausted (see error)

    total_chunks always equals the number of chunk rows for this document;
    total_pages is the highest page_number among them (0 when there are none).
    Both are recomputed in the same transaction that replaces the chunks.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        Index("idx_documents_status",      "status"),
        Index("idx_documents_upload_time", "upload_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key of the uploaded PDF: documents/<document_id>/source.pdf",
    )
    original_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Sanitized filename provided by the client",
    )
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False, default="application/pdf")
    upload_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Processing runs started for the current lifecycle",
    )
    job_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Id of the one queued job allowed to process this document",
    )

    total_pages:  Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    doc_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Client-supplied metadata, stored opaquely",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"chunks={self.total_chunks} file={self.original_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One searchable unit derived from a paragraph, an OCR'd image or a table.
    ocr_confidence is only set for kind='image'.
    """

    __tablename__ = "chunks"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('paragraph', 'image', 'table')",
            name="chunks_kind_check",
        ),
        CheckConstraint("page_number >= 1", name="chunks_page_number_check"),
        CheckConstraint(
            "ocr_confidence IS NULL OR (ocr_confidence >= 0 AND ocr_confidence <= 100)",
            name="chunks_ocr_confidence_check",
        ),
        Index("idx_chunks_document_id",   "document_id"),
        Index("idx_chunks_document_kind", "document_id", "kind"),
        Index("idx_chunks_document_page", "document_id", "page_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    kind:        Mapped[str] = mapped_column(String(20), nullable=False)
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    position: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Bounding box as supplied by the parser; opaque to search",
    )
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    chunk_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Chunk id={self.id} doc={self.document_id} kind={self.kind} "
            f"page={self.page_number}>"
        )
