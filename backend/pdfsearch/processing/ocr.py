"""
OCR Adapter  —  Image → Text with a Bounded Worker Pool
════════════════════════════════════════════════════════

Design: Engine + Adapter
────────────────────────
  OcrEngine          synchronous, single-image recognize call
                     (TesseractOcrEngine in production, fakes in tests)
  OcrAdapter         async facade: worker pool, timeout, post-processing

Concurrency model
─────────────────
  Tesseract is CPU-bound and blocking, so each recognition runs in the
  default thread executor. An asyncio.Semaphore of size `max_workers`
  caps how many run at once; further images wait for a free worker.

  A worker slot is acquired per image through `_worker()` and released
  on every exit path (success, engine error, timeout), so one bad image
  can never leak a slot and starve the rest of the batch.

Failure containment
───────────────────
  recognize()        raises on failure (caller decides)
  recognize_batch()  never raises for a single image; each image gets an
                     OcrBatchItem with success / error, and the caller
                     simply produces no chunk for failed images.

Post-processing (clean_ocr_text)
────────────────────────────────
  - normalize line endings, strip non-printable characters
  - collapse runs of spaces/tabs and blank lines
  - glyph heuristics: "|" → "l", "0" between letters → "O",
    "O" between digits → "0"
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

import pytesseract
from PIL import Image

from pdfsearch.core.errors import DependencyError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MAX_WORKERS     = 2
DEFAULT_TIMEOUT_SECONDS = 120.0

_SPACES_RE      = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_ZERO_AS_O_RE   = re.compile(r"(?<=[A-Za-z])0(?=[A-Za-z])")
_O_AS_ZERO_RE   = re.compile(r"(?<=\d)O(?=\d)")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class OcrResult:
    text:               str      # cleaned text
    confidence:         float    # 0–100
    processing_time_ms: int
    original_text:      str = ""
    word_count:         int = 0


@dataclass
class OcrBatchItem:
    index:   int
    success: bool
    result:  OcrResult | None = None
    error:   str | None = None


@dataclass
class OcrBatchResult:
    items:      list[OcrBatchItem] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed(self) -> int:
        return len(self.items) - self.succeeded


# ---------------------------------------------------------------------------
# Text post-processing
# ---------------------------------------------------------------------------

def clean_ocr_text(text: str) -> str:
    """Remove common OCR artifacts. Pure function."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = "".join(ch for ch in text if ch.isprintable() or ch in "\n\t")
    text = text.replace("|", "l")
    text = _ZERO_AS_O_RE.sub("O", text)
    text = _O_AS_ZERO_RE.sub("0", text)
    text = _SPACES_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class OcrEngine(ABC):
    """Single-image, synchronous recognition. No persistent state required."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def recognize_sync(self, image_bytes: bytes) -> tuple[str, float]:
        """Return (raw_text, confidence 0–100). Blocking; runs in a thread."""
        ...


class TesseractOcrEngine(OcrEngine):
    """
    Tesseract via pytesseract.

    Confidence is the mean of the per-word confidences reported by
    image_to_data; Tesseract marks non-word boxes with -1, which are ignored.
    """

    def __init__(self, language: str = "eng", tesseract_cmd: str = "") -> None:
        self._language = language
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @property
    def name(self) -> str:
        return "tesseract"

    def recognize_sync(self, image_bytes: bytes) -> tuple[str, float]:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            text = pytesseract.image_to_string(image, lang=self._language)
            data = pytesseract.image_to_data(
                image,
                lang=self._language,
                output_type=pytesseract.Output.DICT,
            )

        confidences = []
        for raw in data.get("conf", []):
            try:
                value = float(raw)
            except (TypeError, ValueError):
                continue
            if value >= 0:
                confidences.append(value)

        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return text, confidence


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class OcrAdapter:
    """
    Async, bounded-concurrency front for an OcrEngine.

    Usage:
        ocr = OcrAdapter(TesseractOcrEngine(), max_workers=2)
        result = await ocr.recognize(png_bytes)
        batch  = await ocr.recognize_batch([png1, png2, png3])
    """

    def __init__(
        self,
        engine:          OcrEngine,
        max_workers:     int = DEFAULT_MAX_WORKERS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._engine      = engine
        self._max_workers = max_workers
        self._timeout     = timeout_seconds
        self._slots       = asyncio.Semaphore(max_workers)
        self._active      = 0
        self._peak        = 0

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def active_workers(self) -> int:
        return self._active

    @property
    def peak_workers(self) -> int:
        """Highest number of simultaneously busy workers seen so far."""
        return self._peak

    def status(self) -> dict:
        return {
            "engine":         self._engine.name,
            "max_workers":    self._max_workers,
            "active_workers": self._active,
        }

    @asynccontextmanager
    async def _worker(self) -> AsyncIterator[None]:
        async with self._slots:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                yield
            finally:
                self._active -= 1

    async def recognize(self, image_bytes: bytes) -> OcrResult:
        """Recognize one image. Raises on engine failure or timeout."""
        if not image_bytes:
            raise ValueError("image payload is empty")

        async with self._worker():
            t0 = time.monotonic()
            loop = asyncio.get_running_loop()
            try:
                raw_text, confidence = await asyncio.wait_for(
                    loop.run_in_executor(None, self._engine.recognize_sync, image_bytes),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                raise DependencyError(
                    "ocr", f"{self._engine.name} timed out after {self._timeout}s"
                ) from exc
            elapsed_ms = int((time.monotonic() - t0) * 1000)

        text = clean_ocr_text(raw_text)
        return OcrResult(
            text=text,
            confidence=round(min(max(float(confidence), 0.0), 100.0), 2),
            processing_time_ms=elapsed_ms,
            original_text=raw_text,
            word_count=len(text.split()),
        )

    async def recognize_batch(self, images: Sequence[bytes]) -> OcrBatchResult:
        """
        Recognize many images concurrently (bounded by the pool).
        One image failing never fails the batch.
        """
        t0 = time.monotonic()

        async def _one(index: int, image_bytes: bytes) -> OcrBatchItem:
            try:
                result = await self.recognize(image_bytes)
            except Exception as exc:
                logger.warning("OCR failed | image=%d error=%s", index, exc)
                return OcrBatchItem(index=index, success=False, error=str(exc))
            return OcrBatchItem(index=index, success=True, result=result)

        items = await asyncio.gather(*(_one(i, data) for i, data in enumerate(images)))
        batch = OcrBatchResult(
            items=list(items),
            elapsed_ms=int((time.monotonic() - t0) * 1000),
        )
        logger.info(
            "OCR batch | engine=%s images=%d ok=%d failed=%d elapsed_ms=%d",
            self._engine.name, len(batch.items), batch.succeeded, batch.failed, batch.elapsed_ms,
        )
        return batch
