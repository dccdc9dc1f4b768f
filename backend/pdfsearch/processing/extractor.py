"""
Chunk Extractor
═══════════════

Turns the parser's raw records into uniform, searchable chunks.

  paragraphs ──► clean_text ──► length ≥ 10 ? ──► ParagraphChunk
  images     ──► OcrAdapter ──► length ≥ 6 ?  ──► ImageChunk (+ ocr_confidence)
  tables     ──► table_to_text ─► length ≥ 10 ? ─► TableChunk

Records that come out too short are dropped (counted as `skipped`), never
stored as empty chunks. A record that cannot be processed at all (bad
shape, undecodable image, OCR error) becomes an ExtractionError in
`failures` and extraction carries on with the remaining records.

Text features (word / sentence / character counts, average words per
sentence, digit and capital flags) are pure and deterministic.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from pdfsearch.core.errors import ExtractionError
from pdfsearch.processing.ocr import OcrAdapter
from pdfsearch.schemas.documents import (
    MIN_IMAGE_CHUNK_LENGTH,
    MIN_TEXT_CHUNK_LENGTH,
    ChunkKind,
    ImageChunk,
    ParagraphChunk,
    ParsedContent,
    RawImage,
    RawParagraph,
    RawTable,
    TableChunk,
    TextFeatures,
)
from pdfsearch.schemas.search import ChunkStats

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Text cleaning
# ---------------------------------------------------------------------------

_QUOTE_MAP = str.maketrans({
    "“": '"', "”": '"', "„": '"', "«": '"', "»": '"',
    "‘": "'", "’": "'", "‚": "'", "′": "'",
})

_DISALLOWED_RE   = re.compile(r"""[^\w\s.,!?;:()\-\[\]{}'"/\\]""", re.ASCII)
_REPEAT_PUNCT_RE = re.compile(r"([.,!?;:]){2,}")
_WHITESPACE_RE   = re.compile(r"\s+")
_SENTENCE_RE     = re.compile(r"[.!?]+")
_NUMERIC_CELL_RE = re.compile(r"[-+]?(\d[\d,]*)?\.?\d+%?")


def clean_text(text: str) -> str:
    """Normalize paragraph text for indexing."""
    if not text:
        return ""
    text = text.translate(_QUOTE_MAP)
    text = _DISALLOWED_RE.sub("", text)
    text = _REPEAT_PUNCT_RE.sub(r"\1", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def extract_text_features(text: str) -> TextFeatures:
    words     = text.split()
    sentences = [s for s in _SENTENCE_RE.split(text) if s.strip()]
    return TextFeatures(
        word_count=len(words),
        sentence_count=len(sentences),
        character_count=len(text),
        avg_words_per_sentence=len(words) // len(sentences) if sentences else 0,
        contains_numbers=any(ch.isdigit() for ch in text),
        contains_capitals=any("A" <= ch <= "Z" for ch in text),
    )


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

def _cell(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _row_values(row: list[Any] | Mapping[str, Any]) -> list[Any]:
    return list(row.values()) if isinstance(row, Mapping) else list(row)


def table_to_text(table: RawTable) -> str:
    """
    Flatten a table:
        Headers: a, b
        Row 1: 1, 2
        Caption: ...
    """
    lines: list[str] = []
    if table.headers:
        lines.append("Headers: " + ", ".join(_cell(h) for h in table.headers))
    for number, row in enumerate(table.rows, start=1):
        lines.append(f"Row {number}: " + ", ".join(_cell(v) for v in _row_values(row)))
    if table.caption and table.caption.strip():
        lines.append(f"Caption: {table.caption.strip()}")
    return "\n".join(lines).strip()


def is_numeric_table(table: RawTable) -> bool:
    """True when more than half of the body cells are numbers."""
    cells = [_cell(v) for row in table.rows for v in _row_values(row)]
    cells = [c for c in cells if c]
    if not cells:
        return False
    numeric = sum(1 for c in cells if _NUMERIC_CELL_RE.fullmatch(c))
    return numeric > len(cells) / 2


def _column_count(table: RawTable) -> int:
    if table.headers:
        return len(table.headers)
    return max((len(_row_values(row)) for row in table.rows), default=0)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    chunks:     list[ParagraphChunk | ImageChunk | TableChunk] = field(default_factory=list)
    skipped:    int = 0                       # records dropped for being too short / empty
    failures:   list[ExtractionError] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def failed(self) -> int:
        return len(self.failures)

    def counts_by_kind(self) -> dict[str, int]:
        return dict(Counter(chunk.kind for chunk in self.chunks))


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ChunkExtractor:
    """
    Stateless apart from the injected OCR adapter.

    Usage:
        extractor = ChunkExtractor(ocr=OcrAdapter(TesseractOcrEngine()))
        result = await extractor.extract(parsed_content)
    """

    def __init__(self, ocr: OcrAdapter | None = None) -> None:
        self._ocr = ocr

    async def extract(self, content: ParsedContent | Mapping[str, Any]) -> ExtractionResult:
        if not isinstance(content, ParsedContent):
            content = ParsedContent.model_validate(content)

        t0 = time.monotonic()
        result = ExtractionResult()

        self._collect(result, ChunkKind.PARAGRAPH, content.paragraphs, self._paragraph)
        await self._images(result, content.images)
        self._collect(result, ChunkKind.TABLE, content.tables, self._table)

        result.elapsed_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "Extraction | records=%d chunks=%d by_kind=%s skipped=%d failed=%d elapsed_ms=%d",
            content.record_count, len(result.chunks), result.counts_by_kind(),
            result.skipped, result.failed, result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Per-kind handlers
    # ------------------------------------------------------------------

    def _collect(
        self,
        result:  ExtractionResult,
        kind:    ChunkKind,
        records: Iterable[Mapping[str, Any]],
        handler: Callable[[Mapping[str, Any]], Any],
    ) -> None:
        for index, record in enumerate(records):
            try:
                chunk = handler(record)
            except (ValueError, TypeError, AttributeError) as exc:
                self._fail(result, kind, index, str(exc))
                continue
            if chunk is None:
                result.skipped += 1
            else:
                result.chunks.append(chunk)

    @staticmethod
    def _fail(result: ExtractionResult, kind: ChunkKind, index: int, reason: str) -> None:
        error = ExtractionError(kind.value, index, reason)
        logger.warning("Record skipped | %s", error.message)
        result.failures.append(error)

    @staticmethod
    def _paragraph(record: Mapping[str, Any]) -> ParagraphChunk | None:
        raw = RawParagraph.model_validate(record)
        cleaned = clean_text(raw.content)
        if len(cleaned) < MIN_TEXT_CHUNK_LENGTH:
            return None

        metadata: dict[str, Any] = extract_text_features(cleaned).model_dump(by_alias=True)
        metadata["originalLength"] = len(raw.content)
        metadata["cleanedLength"]  = len(cleaned)
        if raw.font_info:
            metadata["fontInfo"] = raw.font_info
        if raw.style is not None:
            metadata["style"] = raw.style

        return ParagraphChunk(
            content=cleaned,
            page_number=raw.page_number,
            position=raw.position,
            metadata=metadata,
        )

    @staticmethod
    def _table(record: Mapping[str, Any]) -> TableChunk | None:
        raw = RawTable.model_validate(record)
        text = table_to_text(raw)
        if len(text) < MIN_TEXT_CHUNK_LENGTH:
            return None

        metadata: dict[str, Any] = extract_text_features(text).model_dump(by_alias=True)
        metadata.update(
            rowCount=len(raw.rows),
            columnCount=_column_count(raw),
            hasHeaders=bool(raw.headers),
            hasCaption=bool(raw.caption and raw.caption.strip()),
            isNumeric=is_numeric_table(raw),
        )
        return TableChunk(
            content=text,
            page_number=raw.page_number,
            position=raw.position,
            metadata=metadata,
        )

    async def _images(self, result: ExtractionResult, records: list[Mapping[str, Any]]) -> None:
        pending: list[tuple[int, RawImage]] = []
        for index, record in enumerate(records):
            try:
                raw = RawImage.model_validate(record)
            except ValueError as exc:
                self._fail(result, ChunkKind.IMAGE, index, str(exc))
                continue
            if not raw.data:
                result.skipped += 1
                continue
            pending.append((index, raw))

        if not pending:
            return
        if self._ocr is None:
            for index, _ in pending:
                self._fail(result, ChunkKind.IMAGE, index, "no OCR engine configured")
            return

        batch = await self._ocr.recognize_batch([raw.data for _, raw in pending])

        for item in batch.items:
            index, raw = pending[item.index]
            if not item.success or item.result is None:
                self._fail(result, ChunkKind.IMAGE, index, item.error or "OCR failed")
                continue

            ocr = item.result
            if len(ocr.text) < MIN_IMAGE_CHUNK_LENGTH:
                result.skipped += 1
                continue

            metadata: dict[str, Any] = extract_text_features(ocr.text).model_dump(by_alias=True)
            metadata["originalImageSize"] = len(raw.data)
            metadata["processingTime"]    = ocr.processing_time_ms
            if raw.format:
                metadata["format"] = raw.format
            if raw.width and raw.height:
                metadata["dimensions"] = {"width": raw.width, "height": raw.height}

            result.chunks.append(
                ImageChunk(
                    content=ocr.text,
                    page_number=raw.page_number,
                    position=raw.position,
                    ocr_confidence=ocr.confidence,
                    metadata=metadata,
                )
            )


# ---------------------------------------------------------------------------
# Chunk statistics
# ---------------------------------------------------------------------------

def analyze_chunks(chunks: Iterable[Any]) -> ChunkStats:
    """
    Aggregate stats over stored chunks (ORM rows) or extractor chunks.

    Confidence buckets only count image chunks: high ≥ 80, medium ≥ 60, low < 60.
    """
    by_type: Counter[str] = Counter()
    by_page: Counter[int] = Counter()
    total_words = 0
    confidences: list[float] = []

    for chunk in chunks:
        by_type[chunk.kind] += 1
        by_page[chunk.page_number] += 1

        metadata = getattr(chunk, "chunk_metadata", None)
        if metadata is None:
            metadata = getattr(chunk, "metadata", None) or {}
        total_words += int(metadata.get("wordCount", len(chunk.content.split())))

        if chunk.ocr_confidence is not None:
            confidences.append(float(chunk.ocr_confidence))

    distribution = {
        "high":   sum(1 for c in confidences if c >= 80),
        "medium": sum(1 for c in confidences if 60 <= c < 80),
        "low":    sum(1 for c in confidences if c < 60),
    }
    return ChunkStats(
        total=sum(by_type.values()),
        by_type=dict(by_type),
        by_page=dict(sorted(by_page.items())),
        total_words=total_words,
        avg_confidence=round(sum(confidences) / len(confidences), 2) if confidences else None,
        confidence_distribution=distribution,
    )
