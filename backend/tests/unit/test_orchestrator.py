"""
Unit Tests — PipelineOrchestrator
═════════════════════════════════
Coverage targets:
  ✅ pending → processing → completed with chunks persisted and indexed
  ✅ total_chunks / total_pages match the stored rows
  ✅ Duplicate delivery of a completed document is a no-op
  ✅ Failed documents are skipped until reprocessed
  ✅ Reprocessing replaces chunks and index entries, never appends
  ✅ Index failure leaves the document in processing for the retry
  ✅ Search cache purged on completion
  ✅ Progress callbacks (sync and async), failures in them ignored
  ✅ mark_failed guards
"""

from __future__ import annotations

import uuid

import pytest

from pdfsearch.core.errors import DependencyError, NotFoundError, ValidationError
from pdfsearch.pipeline.lifecycle import DocumentStatus
from pdfsearch.pipeline.orchestrator import ProgressStage
from tests.fakes import index_failure


@pytest.mark.unit
class TestProcess:

    async def test_full_run(self, context, sample_content, search_index):
        doc = await context.store.create_document(original_name="report.pdf", file_size=10)

        result = await context.orchestrator.process(doc.id, sample_content)

        assert result.status == "completed"
        assert (result.chunks, result.pages, result.skipped, result.failed) == (4, 2, 1, 0)

        stored = await context.store.get_document(doc.id)
        assert stored.status == "completed"
        assert stored.attempts == 1
        assert stored.total_chunks == await context.store.count_chunks(doc.id) == 4
        assert stored.total_pages == 2

        uid = search_index.index_uid(doc.id)
        assert [op for op, _ in search_index.calls] == ["delete", "create", "configure", "add"]
        indexed = search_index.indexes[uid]
        assert len(indexed) == 4
        assert {d["documentId"] for d in indexed} == {str(doc.id)}
        [table] = [d for d in indexed if d["type"] == "table"]
        assert table["content"] == "Headers: Region, Sales\nRow 1: North, 100\nRow 2: South, 250"
        assert table["metadata"]["isNumeric"] is False

    async def test_unknown_document(self, context, sample_content):
        with pytest.raises(NotFoundError):
            await context.orchestrator.process(uuid.uuid4(), sample_content)

    async def test_duplicate_delivery_is_noop(self, context, completed_document, sample_content, search_index):
        calls_before = list(search_index.calls)

        result = await context.orchestrator.process(completed_document, sample_content)

        assert result.status == "already_processed"
        assert result.chunks == 4
        assert search_index.calls == calls_before
        assert (await context.store.get_document(completed_document)).attempts == 1

    async def test_failed_document_is_skipped(self, context, sample_content, search_index):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        await context.store.transition(doc.id, DocumentStatus.FAILED, error="earlier")

        result = await context.orchestrator.process(doc.id, sample_content)

        assert result.status == "skipped"
        assert search_index.calls == []

    async def test_invalid_content_rejected_before_processing(self, context):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)

        with pytest.raises(ValidationError):
            await context.orchestrator.process(doc.id, {"images": {"not": "a list"}})

        assert (await context.store.get_document(doc.id)).status == "pending"

    async def test_empty_content_completes_with_no_chunks(self, context, search_index):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)

        result = await context.orchestrator.process(doc.id, {})

        assert result.status == "completed"
        stored = await context.store.get_document(doc.id)
        assert (stored.total_chunks, stored.total_pages) == (0, 0)
        assert search_index.indexes[search_index.index_uid(doc.id)] == []

    async def test_reprocess_replaces_chunks_and_index(self, context, completed_document, search_index):
        await context.store.transition(completed_document, DocumentStatus.PENDING)
        content = {"paragraphs": [{"content": "Entirely new single paragraph.", "page": 5}]}

        result = await context.orchestrator.process(completed_document, content)

        assert result.chunks == 1
        stored = await context.store.get_document(completed_document)
        assert (stored.total_chunks, stored.total_pages) == (1, 5)
        indexed = search_index.indexes[search_index.index_uid(completed_document)]
        assert [d["content"] for d in indexed] == ["Entirely new single paragraph."]

    async def test_index_failure_leaves_processing(self, context, sample_content, search_index):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        search_index.fail_with = index_failure()

        with pytest.raises(DependencyError):
            await context.orchestrator.process(doc.id, sample_content)

        stored = await context.store.get_document(doc.id)
        assert stored.status == "processing"
        assert stored.error is None

        # the retry of the same run succeeds
        search_index.fail_with = None
        result = await context.orchestrator.process(doc.id, sample_content)
        assert result.status == "completed"
        assert (await context.store.get_document(doc.id)).attempts == 2

    async def test_completion_purges_search_cache(self, context, sample_content, fake_redis):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        stale_key = context.cache.build_key(doc.id, "old")
        fake_redis.data[stale_key] = "{}"
        fake_redis.data["search:other:entry"] = "{}"

        await context.orchestrator.process(doc.id, sample_content)

        assert stale_key not in fake_redis.data
        assert "search:other:entry" in fake_redis.data

    async def test_image_ocr_failure_does_not_fail_run(self, context, ocr_engine):
        ocr_engine.scripted[b"Revenue chart 2024"] = RuntimeError("unreadable")
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)

        result = await context.orchestrator.process(doc.id, {
            "paragraphs": [{"content": "Paragraph survives the bad image."}],
            "images": [{"data": "UmV2ZW51ZSBjaGFydCAyMDI0"}],
        })

        assert result.status == "completed"
        assert (result.chunks, result.failed) == (1, 1)


@pytest.mark.unit
class TestProgress:

    async def test_sync_callback(self, context, sample_content):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        seen = []

        await context.orchestrator.process(doc.id, sample_content, progress=lambda s, p: seen.append((s, p)))

        assert seen == [
            (ProgressStage.EXTRACTION_STARTED, 10),
            (ProgressStage.EXTRACTION_DONE, 50),
            (ProgressStage.PERSISTED, 70),
            (ProgressStage.INDEXING_DONE, 90),
            (ProgressStage.COMPLETED, 100),
        ]

    async def test_async_callback(self, context, sample_content):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        seen = []

        async def progress(stage, percent):
            seen.append(percent)

        await context.orchestrator.process(doc.id, sample_content, progress=progress)
        assert seen == [10, 50, 70, 90, 100]

    async def test_failing_callback_is_ignored(self, context, sample_content):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)

        def progress(stage, percent):
            raise RuntimeError("result backend down")

        result = await context.orchestrator.process(doc.id, sample_content, progress=progress)
        assert result.status == "completed"


@pytest.mark.unit
class TestMarkFailed:

    async def test_marks_processing_document_failed(self, context):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        await context.store.transition(doc.id, DocumentStatus.PROCESSING)

        failed = await context.orchestrator.mark_failed(doc.id, "x" * 5000)

        assert failed.status == "failed"
        assert len(failed.error) == 2000

    async def test_completed_document_is_left_alone(self, context, completed_document):
        doc = await context.orchestrator.mark_failed(completed_document, "late failure")
        assert doc.status == "completed"
        assert doc.error is None

    async def test_already_failed_keeps_first_error(self, context):
        doc = await context.store.create_document(original_name="a.pdf", file_size=1)
        await context.orchestrator.mark_failed(doc.id, "first")

        again = await context.orchestrator.mark_failed(doc.id, "second")

        assert again.error == "first"

    async def test_unknown_document(self, context):
        assert await context.orchestrator.mark_failed(uuid.uuid4(), "boom") is None
