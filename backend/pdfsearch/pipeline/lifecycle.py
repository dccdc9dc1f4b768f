"""
Document lifecycle state machine.

    pending ──► processing ──► completed
       │            │ ▲
       │            └─┘ (redelivery / retry of the same run)
       ▼            ▼
     failed ◄───────┘

    completed | failed ──► pending   (explicit reprocess only)

Any other move raises InvalidTransitionError.
"""

from __future__ import annotations

from enum import Enum

from pdfsearch.core.errors import InvalidTransitionError


class DocumentStatus(str, Enum):
    PENDING    = "pending"      # stored, waiting for a worker
    PROCESSING = "processing"   # a worker owns the run
    COMPLETED  = "completed"    # chunks persisted and indexed, searchable
    FAILED     = "failed"       # retries exhausted (see Document.error)


_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset(
        {DocumentStatus.PROCESSING, DocumentStatus.FAILED}
    ),
    DocumentStatus.PROCESSING: frozenset(
        {DocumentStatus.PROCESSING, DocumentStatus.COMPLETED, DocumentStatus.FAILED}
    ),
    DocumentStatus.COMPLETED: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.FAILED:    frozenset({DocumentStatus.PENDING}),
}


def can_transition(current: DocumentStatus | str, target: DocumentStatus | str) -> bool:
    return DocumentStatus(target) in _TRANSITIONS[DocumentStatus(current)]


def ensure_transition(current: DocumentStatus | str, target: DocumentStatus | str) -> DocumentStatus:
    """Return the target status, or raise if the move is not allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(DocumentStatus(current).value, DocumentStatus(target).value)
    return DocumentStatus(target)


def is_terminal(status: DocumentStatus | str) -> bool:
    """Terminal until an explicit reprocess request."""
    return DocumentStatus(status) in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)
