"""
Service context — the long-lived handles every entry point needs.

The API builds one AppContext at startup and keeps it on app.state; each
Celery task opens its own for the duration of a run (NullPool engine,
fresh Redis client) because every task executes in a new event loop.

Tests call build_context() directly with in-memory fakes for the index,
cache and OCR engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from pdfsearch.core.config import Settings
from pdfsearch.db.session import build_engine, build_sessionmaker
from pdfsearch.pipeline.orchestrator import PipelineOrchestrator
from pdfsearch.processing.extractor import ChunkExtractor
from pdfsearch.processing.ocr import OcrAdapter, TesseractOcrEngine
from pdfsearch.search.cache import SearchCache
from pdfsearch.search.index import MeilisearchIndex, SearchIndexBase
from pdfsearch.search.service import SearchService
from pdfsearch.services.ingestion import IngestionService
from pdfsearch.storage.s3 import S3DocumentStorage
from pdfsearch.store.metadata import MetadataStore
from pdfsearch.workers.celery_app import celery_app
from pdfsearch.workers.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings:     Settings
    engine:       AsyncEngine
    store:        MetadataStore
    index:        SearchIndexBase
    cache:        SearchCache
    files:        S3DocumentStorage
    queue:        JobQueue
    ocr:          OcrAdapter
    orchestrator: PipelineOrchestrator
    search:       SearchService
    ingestion:    IngestionService


def build_context(
    settings: Settings,
    *,
    engine: AsyncEngine,
    index:  SearchIndexBase,
    cache:  SearchCache,
    queue:  JobQueue,
    files:  S3DocumentStorage | None = None,
    ocr:    OcrAdapter | None = None,
) -> AppContext:
    store = MetadataStore(build_sessionmaker(engine))
    files = files or S3DocumentStorage.from_settings(settings)
    ocr = ocr or OcrAdapter(
        TesseractOcrEngine(language=settings.ocr_language, tesseract_cmd=settings.tesseract_cmd),
        max_workers=settings.ocr_max_workers,
        timeout_seconds=settings.ocr_timeout_seconds,
    )
    orchestrator = PipelineOrchestrator(store, ChunkExtractor(ocr), index, cache)
    return AppContext(
        settings=settings,
        engine=engine,
        store=store,
        index=index,
        cache=cache,
        files=files,
        queue=queue,
        ocr=ocr,
        orchestrator=orchestrator,
        search=SearchService(store, index, cache, settings),
        ingestion=IngestionService(store, files, queue, index, cache, settings),
    )


@asynccontextmanager
async def open_context(settings: Settings, *, null_pool: bool = False) -> AsyncIterator[AppContext]:
    """Build a context against the configured services and tear it down on exit."""
    engine = build_engine(settings, null_pool=null_pool)
    redis  = Redis.from_url(settings.redis_url, decode_responses=True)
    cache  = SearchCache(redis, prefix=settings.cache_prefix, default_ttl=settings.cache_ttl_seconds)
    context = build_context(
        settings,
        engine=engine,
        index=MeilisearchIndex.from_settings(settings),
        cache=cache,
        queue=JobQueue(celery_app, redis),
    )
    try:
        yield context
    finally:
        await cache.close()
        await engine.dispose()
