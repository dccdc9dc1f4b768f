"""
Integration Tests — HTTP API through the ASGI app
══════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart form parsing and JSON form fields
  - Dependency wiring from app.state.context
  - Exception handlers → structured ErrorResponse bodies
  - Response status codes, headers and body schemas

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, request parsing, Pydantic validation,
           IngestionService, PipelineOrchestrator, SearchService,
           MetadataStore on SQLite, S3DocumentStorage
  🔲 Fake: S3           (InMemoryS3 session)
  🔲 Fake: Meilisearch  (InMemorySearchIndex)
  🔲 Fake: Redis        (InMemoryRedis)
  🔲 Fake: Tesseract    (FakeOcrEngine)
  🔲 Mock: Celery       (job_queue fixture); the worker step is run by
                        calling the orchestrator directly

How to run
──────────
  pytest -m integration backend/tests/integration/test_api.py -v
"""

from __future__ import annotations

import json
import uuid

import pytest


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _upload_form(content: bytes, parsed_content, filename: str = "report.pdf", metadata=None) -> dict:
    data = {"parsed_content": parsed_content if isinstance(parsed_content, str) else json.dumps(parsed_content)}
    if metadata is not None:
        data["metadata"] = json.dumps(metadata)
    return {
        "files": {"file": (filename, content, "application/pdf")},
        "data":  data,
    }


async def _upload(async_client, sample_pdf_bytes, sample_content, **kwargs):
    form = _upload_form(sample_pdf_bytes, sample_content, **kwargs)
    return await async_client.post("/api/v1/documents/upload", files=form["files"], data=form["data"])


async def _uploaded_and_processed(async_client, context, sample_pdf_bytes, sample_content) -> str:
    """Upload through the API, then run the worker step for the new document."""
    resp = await _upload(async_client, sample_pdf_bytes, sample_content)
    document_id = resp.json()["document_id"]
    await context.orchestrator.process(uuid.UUID(document_id), sample_content)
    return document_id


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadEndpoint:

    async def test_upload_returns_202(self, async_client, sample_pdf_bytes, sample_content, job_queue):
        resp = await _upload(async_client, sample_pdf_bytes, sample_content, metadata={"source": "scanner"})

        assert resp.status_code == 202, resp.text
        body = resp.json()
        assert body["status"] == "pending"
        assert body["filename"] == "report.pdf"
        assert body["file_size"] == len(sample_pdf_bytes)
        assert body["records"] == 5
        assert uuid.UUID(body["job_id"])
        assert "upload_time" in body

        assert resp.headers["X-Document-ID"] == body["document_id"]
        assert resp.headers["Location"] == f"/api/v1/documents/{body['document_id']}/status"
        assert "X-Request-ID" in resp.headers
        job_queue.enqueue.assert_awaited_once()

    async def test_request_id_is_echoed(self, async_client, sample_pdf_bytes, sample_content):
        form = _upload_form(sample_pdf_bytes, sample_content)
        resp = await async_client.post(
            "/api/v1/documents/upload",
            files=form["files"],
            data=form["data"],
            headers={"X-Request-ID": "trace-123"},
        )
        assert resp.headers["X-Request-ID"] == "trace-123"

    async def test_non_pdf_rejected(self, async_client, sample_content):
        resp = await _upload(async_client, b"PK\x03\x04 not a pdf", sample_content, filename="doc.docx")

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "UNSUPPORTED_FILE_TYPE"
        assert body["details"][0]["field"] == "file"
        assert body["request_id"]

    async def test_empty_file_rejected(self, async_client, sample_content):
        resp = await _upload(async_client, b"", sample_content)
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "MISSING_FILE"

    async def test_oversized_file_rejected(self, async_client, context, sample_pdf_bytes, sample_content):
        context.settings.max_upload_bytes = 64

        resp = await _upload(async_client, sample_pdf_bytes, sample_content)

        assert resp.status_code == 413
        assert resp.json()["error_code"] == "FILE_TOO_LARGE"

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", "   "])
    async def test_invalid_parsed_content_json(self, async_client, sample_pdf_bytes, raw):
        resp = await _upload(async_client, sample_pdf_bytes, raw)

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "INVALID_JSON"
        assert body["details"][0]["field"] == "parsed_content"

    async def test_malformed_parsed_content_shape(self, async_client, sample_pdf_bytes):
        resp = await _upload(async_client, sample_pdf_bytes, {"paragraphs": "not a list"})

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_missing_parsed_content_field(self, async_client, sample_pdf_bytes):
        resp = await async_client.post(
            "/api/v1/documents/upload",
            files={"file": ("report.pdf", sample_pdf_bytes, "application/pdf")},
        )
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_broker_outage_still_accepts(self, async_client, sample_pdf_bytes, sample_content, job_queue):
        from kombu.exceptions import OperationalError

        job_queue.enqueue.side_effect = OperationalError("broker down")

        resp = await _upload(async_client, sample_pdf_bytes, sample_content)

        assert resp.status_code == 202
        assert resp.json()["job_id"] is None


# ─────────────────────────────────────────────────────────────────────────────
# Document read endpoints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestDocumentEndpoints:

    async def test_status_pending_then_completed(self, async_client, context, sample_pdf_bytes, sample_content):
        resp = await _upload(async_client, sample_pdf_bytes, sample_content)
        document_id = resp.json()["document_id"]

        status_resp = await async_client.get(f"/api/v1/documents/{document_id}/status")
        assert status_resp.status_code == 200
        body = status_resp.json()
        assert body["status"] == "pending"
        assert body["progress"] == 0
        assert body["attempts"] == 0
        assert body["queue"] == {"waiting": 1, "active": 0, "completed": 3, "failed": 1, "delayed": 0}

        await context.orchestrator.process(uuid.UUID(document_id), sample_content)

        body = (await async_client.get(f"/api/v1/documents/{document_id}/status")).json()
        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["total_chunks"] == 4
        assert body["total_pages"] == 2
        assert body["error"] is None

    async def test_status_before_first_queue_snapshot(self, async_client, completed_document, job_queue):
        job_queue.stats.return_value = None

        resp = await async_client.get(f"/api/v1/documents/{completed_document}/status")

        assert resp.status_code == 200
        assert resp.json()["queue"] is None

    async def test_get_document(self, async_client, completed_document):
        resp = await async_client.get(f"/api/v1/documents/{completed_document}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == str(completed_document)
        assert body["filename"] == "report.pdf"
        assert body["status"] == "completed"
        assert body["mime_type"] == "application/pdf"

    async def test_unknown_document_404(self, async_client):
        resp = await async_client.get(f"/api/v1/documents/{uuid.uuid4()}")

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_malformed_id_422(self, async_client):
        resp = await async_client.get("/api/v1/documents/not-a-uuid")
        assert resp.status_code == 422

    async def test_list_with_filters(self, async_client, context, sample_pdf_bytes, sample_content):
        await _uploaded_and_processed(async_client, context, sample_pdf_bytes, sample_content)
        await _upload(async_client, sample_pdf_bytes, sample_content, filename="second.pdf")

        resp = await async_client.get("/api/v1/documents", params={"status": "pending"})
        assert resp.status_code == 200
        body = resp.json()
        assert [d["filename"] for d in body["documents"]] == ["second.pdf"]
        assert body["pagination"] == {"offset": 0, "limit": 20, "total": 1, "has_more": False}

        body = (await async_client.get("/api/v1/documents", params={"limit": 1, "sort_by": "filename", "sort_order": "asc"})).json()
        assert [d["filename"] for d in body["documents"]] == ["report.pdf"]
        assert body["pagination"]["has_more"] is True

    async def test_list_limit_is_capped(self, async_client, context, sample_pdf_bytes, sample_content):
        await _upload(async_client, sample_pdf_bytes, sample_content)

        body = (await async_client.get("/api/v1/documents", params={"limit": 1000})).json()

        assert body["pagination"]["limit"] == context.settings.search_max_limit == 100
        assert len(body["documents"]) == 1

    async def test_content_limit_is_capped(self, async_client, completed_document):
        body = (await async_client.get(
            f"/api/v1/documents/{completed_document}/content", params={"limit": 5000},
        )).json()

        assert body["pagination"]["limit"] == 100
        assert len(body["chunks"]) == 4

    async def test_list_rejects_unknown_sort(self, async_client):
        resp = await async_client.get("/api/v1/documents", params={"sort_by": "secret"})
        assert resp.status_code == 422

    async def test_content_requires_completed(self, async_client, sample_pdf_bytes, sample_content):
        document_id = (await _upload(async_client, sample_pdf_bytes, sample_content)).json()["document_id"]

        resp = await async_client.get(f"/api/v1/documents/{document_id}/content")

        assert resp.status_code == 422
        assert resp.json()["error_code"] == "DOCUMENT_NOT_READY"

    async def test_content_filters(self, async_client, completed_document):
        resp = await async_client.get(f"/api/v1/documents/{completed_document}/content")
        assert resp.status_code == 200
        body = resp.json()
        assert body["pagination"]["total"] == 4
        assert [c["page_number"] for c in body["chunks"]] == [1, 1, 2, 2]

        body = (await async_client.get(
            f"/api/v1/documents/{completed_document}/content", params={"type": "image"},
        )).json()
        [image] = body["chunks"]
        assert image["kind"] == "image"
        assert image["content"] == "Revenue chart 2024"
        assert image["ocr_confidence"] == 91.5
        assert image["metadata"]["dimensions"] == {"width": 640, "height": 480}

        body = (await async_client.get(
            f"/api/v1/documents/{completed_document}/content", params={"page": 2, "limit": 1},
        )).json()
        assert len(body["chunks"]) == 1
        assert body["pagination"] == {"offset": 0, "limit": 1, "total": 2, "has_more": True}


# ─────────────────────────────────────────────────────────────────────────────
# Reprocess / delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReprocessAndDelete:

    async def test_reprocess_pending_conflicts(self, async_client, sample_pdf_bytes, sample_content):
        document_id = (await _upload(async_client, sample_pdf_bytes, sample_content)).json()["document_id"]

        resp = await async_client.post(f"/api/v1/documents/{document_id}/reprocess")

        assert resp.status_code == 409
        body = resp.json()
        assert body["error_code"] == "INVALID_STATUS_TRANSITION"

    async def test_reprocess_completed(self, async_client, completed_document, job_queue):
        resp = await async_client.post(f"/api/v1/documents/{completed_document}/reprocess")

        assert resp.status_code == 202
        body = resp.json()
        assert body["document_id"] == str(completed_document)
        assert body["status"] == "pending"
        job_queue.enqueue.assert_awaited_once_with(completed_document, job_id=body["job_id"], countdown=None)

        search = await async_client.get(f"/api/v1/search/{completed_document}", params={"q": "revenue"})
        assert search.status_code == 422

    async def test_delete(self, async_client, completed_document, search_index):
        resp = await async_client.delete(f"/api/v1/documents/{completed_document}")

        assert resp.status_code == 200
        assert resp.json() == {"document_id": str(completed_document), "deleted": True}
        assert search_index.index_uid(completed_document) not in search_index.indexes
        assert (await async_client.get(f"/api/v1/documents/{completed_document}")).status_code == 404
        assert (await async_client.delete(f"/api/v1/documents/{completed_document}")).status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestSearchEndpoints:

    async def test_upload_process_search(self, async_client, context, sample_pdf_bytes, sample_content):
        document_id = await _uploaded_and_processed(async_client, context, sample_pdf_bytes, sample_content)

        resp = await async_client.get(f"/api/v1/search/{document_id}", params={"q": "revenue"})

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert len(body["hits"]) == 3
        assert body["document"]["id"] == document_id
        assert body["pagination"]["total"] == 3
        assert body["search_metadata"]["cleaned_query"] == "revenue"
        assert body["search_metadata"]["cached"] is False
        assert all("<mark>" in hit["highlighted"] for hit in body["hits"])

        again = (await async_client.get(f"/api/v1/search/{document_id}", params={"q": "revenue"})).json()
        assert again["search_metadata"]["cached"] is True

    async def test_filters(self, async_client, completed_document):
        base = f"/api/v1/search/{completed_document}"

        by_type = (await async_client.get(base, params={"q": "revenue", "type": "image"})).json()
        assert [h["kind"] for h in by_type["hits"]] == ["image"]

        by_page = (await async_client.get(base, params={"q": "revenue", "page": 1})).json()
        assert [h["page_number"] for h in by_page["hits"]] == [1]

        confident = (await async_client.get(base, params={"q": "revenue", "min_confidence": 95})).json()
        assert confident["hits"] == []

        sorted_desc = (await async_client.get(
            base, params={"q": "revenue", "sort_by": "pageNumber", "sort_order": "desc"},
        )).json()
        assert [h["page_number"] for h in sorted_desc["hits"]] == [2, 2, 1]

    async def test_type_and_page_routes(self, async_client, completed_document):
        by_type = await async_client.get(f"/api/v1/search/{completed_document}/type/table", params={"q": "north"})
        assert by_type.status_code == 200
        assert [h["kind"] for h in by_type.json()["hits"]] == ["table"]

        by_page = await async_client.get(f"/api/v1/search/{completed_document}/page/2", params={"q": "revenue"})
        assert {h["page_number"] for h in by_page.json()["hits"]} == {2}

    async def test_query_too_short(self, async_client, completed_document, search_index):
        resp = await async_client.get(f"/api/v1/search/{completed_document}", params={"q": "a"})

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "QUERY_TOO_SHORT"
        assert search_index.searches == []

    async def test_missing_query(self, async_client, completed_document):
        resp = await async_client.get(f"/api/v1/search/{completed_document}")
        assert resp.status_code == 400

    async def test_unknown_document(self, async_client):
        resp = await async_client.get(f"/api/v1/search/{uuid.uuid4()}", params={"q": "revenue"})
        assert resp.status_code == 404

    async def test_not_ready(self, async_client, sample_pdf_bytes, sample_content):
        document_id = (await _upload(async_client, sample_pdf_bytes, sample_content)).json()["document_id"]

        resp = await async_client.get(f"/api/v1/search/{document_id}", params={"q": "revenue"})

        assert resp.status_code == 422
        assert resp.json()["error_code"] == "DOCUMENT_NOT_READY"

    async def test_invalid_filter_values(self, async_client, completed_document):
        base = f"/api/v1/search/{completed_document}"
        assert (await async_client.get(base, params={"q": "revenue", "type": "video"})).status_code == 422
        assert (await async_client.get(base, params={"q": "revenue", "min_confidence": 101})).status_code == 422
        assert (await async_client.get(base, params={"q": "revenue", "page": 0})).status_code == 422

    async def test_index_unreachable_is_503(self, async_client, completed_document, search_index):
        from tests.fakes import index_failure

        search_index.fail_with = index_failure()

        resp = await async_client.get(f"/api/v1/search/{completed_document}", params={"q": "revenue"})

        assert resp.status_code == 503
        assert resp.json()["error_code"] == "DEPENDENCY_UNAVAILABLE"

    async def test_suggestions(self, async_client, completed_document):
        resp = await async_client.get(f"/api/v1/search/{completed_document}/suggestions", params={"q": "rev"})

        assert resp.status_code == 200
        assert resp.json() == {"document_id": str(completed_document), "query": "rev", "suggestions": ["revenue"]}

    async def test_stats(self, async_client, completed_document):
        resp = await async_client.get(f"/api/v1/search/{completed_document}/stats")

        assert resp.status_code == 200
        stats = resp.json()["stats"]
        assert stats["total"] == 4
        assert stats["by_page"] == {"1": 2, "2": 2}
        assert stats["confidence_distribution"]["high"] == 1

    async def test_clear_cache(self, async_client, completed_document, search_index):
        await async_client.get(f"/api/v1/search/{completed_document}", params={"q": "revenue"})

        resp = await async_client.delete(f"/api/v1/search/{completed_document}/cache")

        assert resp.status_code == 200
        assert resp.json() == {"document_id": str(completed_document), "cleared": 1}
        await async_client.get(f"/api/v1/search/{completed_document}", params={"q": "revenue"})
        assert len(search_index.searches) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Two-record document: one paragraph, one table
# ─────────────────────────────────────────────────────────────────────────────

FOX_AND_TABLE = {
    "paragraphs": [{"content": "The quick brown fox jumps over the lazy dog", "pageNumber": 1}],
    "tables":     [{"headers": ["A", "B"], "rows": [["1", "2"]], "pageNumber": 2}],
}


@pytest.mark.integration
class TestParagraphAndTableDocument:

    @pytest.fixture
    async def document_id(self, async_client, context, sample_pdf_bytes) -> str:
        return await _uploaded_and_processed(async_client, context, sample_pdf_bytes, FOX_AND_TABLE)

    async def test_totals_after_processing(self, async_client, document_id):
        body = (await async_client.get(f"/api/v1/documents/{document_id}/status")).json()

        assert body["status"] == "completed"
        assert body["total_chunks"] == 2
        assert body["total_pages"] == 2

    async def test_word_from_paragraph(self, async_client, document_id):
        resp = await async_client.get(f"/api/v1/search/{document_id}", params={"q": "fox"})

        assert resp.status_code == 200, resp.text
        hits = resp.json()["hits"]
        assert [(h["kind"], h["page_number"]) for h in hits] == [("paragraph", 1)]

    async def test_single_letter_header_is_below_min_query_length(self, async_client, document_id, search_index):
        resp = await async_client.get(f"/api/v1/search/{document_id}", params={"q": "A", "type": "table"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "QUERY_TOO_SHORT"
        assert {d["field"]: d["message"] for d in body["details"]}["min_length"] == "2"
        assert search_index.searches == []

    async def test_table_found_through_flattened_text(self, async_client, document_id):
        resp = await async_client.get(f"/api/v1/search/{document_id}", params={"q": "headers", "type": "table"})

        assert resp.status_code == 200, resp.text
        hits = resp.json()["hits"]
        assert [(h["kind"], h["page_number"]) for h in hits] == [("table", 2)]


# ─────────────────────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestHealthEndpoints:

    async def test_liveness(self, async_client):
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "pdf-search-api"}

    async def test_readiness(self, async_client, search_index):
        resp = await async_client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

        search_index.healthy = False
        resp = await async_client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"

    async def test_search_health(self, async_client, search_index, fake_redis):
        resp = await async_client.get("/api/v1/search/health")
        assert resp.status_code == 200
        assert resp.json()["index"] == {"status": "ok"}

        fake_redis.broken = True
        degraded_cache = await async_client.get("/api/v1/search/health")
        assert degraded_cache.status_code == 200
        assert degraded_cache.json()["cache"]["status"] == "error"

        search_index.healthy = False
        assert (await async_client.get("/api/v1/search/health")).status_code == 503
