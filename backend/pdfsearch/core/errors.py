"""
Error taxonomy for the content pipeline and search layer.

Every error carries a stable `error_code` and the HTTP status the API
boundary maps it to. Propagation rules:

  ValidationError / QueryTooShortError  bad input, surfaced immediately, never retried
  NotFoundError                         unknown document
  NotReadyError                         document exists but is not `completed`
  InvalidTransitionError                illegal lifecycle transition
  ExtractionError                       one content record failed; logged and skipped
  DependencyError                       index / queue / OCR unreachable; drives retry
  ProcessingFailure                     terminal, recorded on the Document
"""

from __future__ import annotations

from typing import Any


class PdfSearchError(Exception):
    error_code:  str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PdfSearchError):
    error_code  = "VALIDATION_ERROR"
    status_code = 400


class QueryTooShortError(ValidationError):
    error_code = "QUERY_TOO_SHORT"

    def __init__(self, query: str, min_length: int) -> None:
        super().__init__(
            f"Search query must be at least {min_length} characters long.",
            details={"query": query, "min_length": min_length},
        )


class NotFoundError(PdfSearchError):
    error_code  = "DOCUMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, document_id: Any) -> None:
        super().__init__(
            f"Document '{document_id}' was not found.",
            details={"document_id": str(document_id)},
        )


class NotReadyError(PdfSearchError):
    error_code  = "DOCUMENT_NOT_READY"
    status_code = 422

    def __init__(self, document_id: Any, status: str) -> None:
        super().__init__(
            f"Document '{document_id}' is not ready (status: {status}).",
            details={"document_id": str(document_id), "status": status},
        )
        self.status = status


class InvalidTransitionError(PdfSearchError):
    error_code  = "INVALID_STATUS_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move document from '{current}' to '{target}'.",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target  = target


class ExtractionError(PdfSearchError):
    error_code  = "EXTRACTION_ERROR"
    status_code = 422

    def __init__(self, kind: str, index: int, reason: str) -> None:
        super().__init__(
            f"Failed to extract {kind} record #{index}: {reason}",
            details={"kind": kind, "index": index},
        )
        self.kind  = kind
        self.index = index


class DependencyError(PdfSearchError):
    error_code  = "DEPENDENCY_UNAVAILABLE"
    status_code = 503

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(f"{dependency}: {message}", details={"dependency": dependency})
        self.dependency = dependency


class ProcessingFailure(PdfSearchError):
    error_code  = "PROCESSING_FAILED"
    status_code = 500
