"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  test_settings  → engine → store
  fake_redis     → cache
  search_index, ocr_engine → ocr
  fake_s3        → files (S3DocumentStorage over InMemoryS3)
  job_queue      (MagicMock over JobQueue; nothing reaches a broker)
  context        → the full AppContext wired with the fakes above
  async_client   → httpx client over create_app(context)

Environment strategy:
  - Every test gets its own SQLite file (aiosqlite) under tmp_path.
  - Meilisearch, Redis, S3 and Tesseract are replaced by tests/fakes.py.
  - Celery uses the in-memory broker; tasks are never published for real.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # API tests through the ASGI app
"""

from __future__ import annotations

import os
import tempfile
import uuid
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

_TMP = tempfile.gettempdir()

os.environ.setdefault("DATABASE_URL",          f"sqlite+aiosqlite:///{_TMP}/pdfsearch_test.db")
os.environ.setdefault("REDIS_URL",             "redis://localhost:6379/15")
os.environ.setdefault("MEILISEARCH_URL",       "http://localhost:7700")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "false")

from pdfsearch.context import AppContext, build_context  # noqa: E402
from pdfsearch.core.config import Settings  # noqa: E402
from pdfsearch.db.session import build_engine, build_sessionmaker, create_tables  # noqa: E402
from pdfsearch.main import create_app  # noqa: E402
from pdfsearch.processing.ocr import OcrAdapter  # noqa: E402
from pdfsearch.schemas.documents import QueueStats  # noqa: E402
from pdfsearch.search.cache import SearchCache  # noqa: E402
from pdfsearch.storage.s3 import S3DocumentStorage  # noqa: E402
from pdfsearch.store.metadata import MetadataStore  # noqa: E402
from pdfsearch.workers.queue import JobQueue  # noqa: E402
from tests.fakes import FakeOcrEngine, InMemoryRedis, InMemoryS3, InMemorySearchIndex  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Settings + database
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pdfsearch.db'}",
        redis_url="redis://localhost:6379/15",
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        app_env="development",
    )


@pytest_asyncio.fixture
async def engine(test_settings):
    engine = build_engine(test_settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine) -> MetadataStore:
    return MetadataStore(build_sessionmaker(engine))


# ─────────────────────────────────────────────────────────────────────────────
# External collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def cache(fake_redis, test_settings) -> SearchCache:
    return SearchCache(fake_redis, prefix=test_settings.cache_prefix, default_ttl=test_settings.cache_ttl_seconds)


@pytest.fixture
def search_index() -> InMemorySearchIndex:
    return InMemorySearchIndex()


@pytest.fixture
def ocr_engine() -> FakeOcrEngine:
    return FakeOcrEngine()


@pytest.fixture
def ocr(ocr_engine) -> OcrAdapter:
    return OcrAdapter(ocr_engine, max_workers=2, timeout_seconds=5)


@pytest.fixture
def fake_s3() -> InMemoryS3:
    return InMemoryS3()


@pytest.fixture
def files(fake_s3, test_settings) -> S3DocumentStorage:
    return S3DocumentStorage(
        test_settings.s3_bucket,
        region_name=test_settings.aws_region,
        session=fake_s3,
    )


@pytest.fixture
def job_queue():
    """Mocked JobQueue — records enqueue calls without touching Celery/broker."""
    queue = MagicMock(spec=JobQueue)
    queue.enqueue   = AsyncMock(side_effect=lambda document_id, *a, job_id=None, **kw: job_id or f"job-{document_id}")
    queue.job_state = AsyncMock(return_value="PENDING")
    queue.stats   = AsyncMock(return_value=QueueStats(waiting=1, active=0, completed=3, failed=1, delayed=0))
    return queue


@pytest.fixture
def context(test_settings, engine, search_index, cache, job_queue, files, ocr) -> AppContext:
    return build_context(
        test_settings,
        engine=engine,
        index=search_index,
        cache=cache,
        queue=job_queue,
        files=files,
        ocr=ocr,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sample payloads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF — passes magic-byte check (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"%%EOF"
    )


@pytest.fixture
def sample_content() -> dict[str, Any]:
    """
    Parser output for a two-page document:
      page 1  two paragraphs (one too short), one table
      page 2  one paragraph, one image (base64 "Revenue chart 2024")
    """
    return {
        "paragraphs": [
            {"content": "Quarterly revenue grew by 12 percent.", "pageNumber": 1},
            {"text": "Too short", "page": 1},
            {"content": "The revenue forecast for next year is optimistic.", "pageNumber": 2},
        ],
        "images": [
            {"data": "UmV2ZW51ZSBjaGFydCAyMDI0", "pageNumber": 2, "format": "png", "width": 640, "height": 480},
        ],
        "tables": [
            {"headers": ["Region", "Sales"], "rows": [["North", "100"], ["South", "250"]], "pageNumber": 1},
        ],
    }


@pytest.fixture
def document_id() -> uuid.UUID:
    return uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


@pytest_asyncio.fixture
async def completed_document(context, sample_content) -> AsyncGenerator[uuid.UUID, None]:
    """A document taken through the full pipeline: completed and indexed."""
    doc = await context.store.create_document(original_name="report.pdf", file_size=1024)
    await context.files.put_content(doc.id, sample_content)
    await context.orchestrator.process(doc.id, sample_content)
    yield doc.id


# ─────────────────────────────────────────────────────────────────────────────
# HTTP client
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def async_client(context) -> AsyncGenerator[AsyncClient, None]:
    """httpx client bound to an app wired with the test context (no lifespan run)."""
    app = create_app(context)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
