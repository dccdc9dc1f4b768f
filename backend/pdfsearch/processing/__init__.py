"""
Content Processing Package
══════════════════════════

  extractor.py  Raw parsed records → paragraph / image / table chunks
  ocr.py        Bounded-concurrency OCR adapter over Tesseract
"""

from pdfsearch.processing.extractor import ChunkExtractor, ExtractionResult, analyze_chunks
from pdfsearch.processing.ocr import OcrAdapter, OcrEngine, OcrResult, TesseractOcrEngine

__all__ = [
    "ChunkExtractor",
    "ExtractionResult",
    "analyze_chunks",
    "OcrAdapter",
    "OcrEngine",
    "OcrResult",
    "TesseractOcrEngine",
]
