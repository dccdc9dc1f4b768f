"""
Composed FastAPI Dependencies

Every handle comes from the AppContext built at startup (app.state.context).
Route handlers import from here — never from context.py directly.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from pdfsearch.context import AppContext
from pdfsearch.search.service import SearchService
from pdfsearch.services.ingestion import IngestionService
from pdfsearch.store.metadata import MetadataStore
from pdfsearch.workers.queue import JobQueue


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_store(context: Annotated[AppContext, Depends(get_context)]) -> MetadataStore:
    return context.store


def get_search_service(context: Annotated[AppContext, Depends(get_context)]) -> SearchService:
    return context.search


def get_ingestion_service(context: Annotated[AppContext, Depends(get_context)]) -> IngestionService:
    return context.ingestion


def get_job_queue(context: Annotated[AppContext, Depends(get_context)]) -> JobQueue:
    return context.queue


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Context   = Annotated[AppContext, Depends(get_context)]
Store     = Annotated[MetadataStore, Depends(get_store)]
Search    = Annotated[SearchService, Depends(get_search_service)]
Ingestion = Annotated[IngestionService, Depends(get_ingestion_service)]
Queue     = Annotated[JobQueue, Depends(get_job_queue)]
