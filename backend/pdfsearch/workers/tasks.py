"""
Celery Tasks — Document Processing Pipeline

Task: process_document
  1. Open a worker context (NullPool engine, fresh Redis / Meilisearch clients)
  2. Load the parsed content (job payload, or the copy stored at upload)
  3. Run the orchestrator: processing → extract → persist → index → completed
  4. Transient errors retry with exponential backoff; once the attempt limit
     is reached the document is marked failed with the last error

  Invalid content is never retried: the document goes straight to failed.
  A job whose id is not the one recorded on the document (it was replaced by
  a later dispatch) exits without touching the document.

Task: recover_stalled_documents
  Beat task (every 60 s).
  - processing for longer than STALL_TIMEOUT_SECONDS: the worker died or the
    broker lost the job. Re-enqueue, or mark failed once attempts are spent.
  - pending for longer than PENDING_REQUEUE_SECONDS: dispatch only when no
    live job exists: no job recorded (the broker was down during upload), the
    recorded job already finished, or the document has waited longer than
    PENDING_JOB_LOST_SECONDS. A job that is merely queued behind a backlog
    is left alone.

Task: snapshot_queue_stats
  Beat task (every 15 s). Inspects broker and workers once and caches the
  result in Redis; the status route only ever reads that snapshot.

Task: health_check
  Liveness probe routed to system.health.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

from celery import Task

from pdfsearch.context import AppContext, open_context
from pdfsearch.core.config import get_settings
from pdfsearch.core.errors import NotFoundError, ProcessingFailure, ValidationError
from pdfsearch.pipeline.lifecycle import DocumentStatus
from pdfsearch.pipeline.orchestrator import ProgressStage
from pdfsearch.workers.celery_app import (
    HEALTH_TASK,
    PROCESS_TASK,
    RECOVER_TASK,
    STATS_TASK,
    celery_app,
)
from pdfsearch.workers.queue import LIVE_JOB_STATES, RetryPolicy, dispatch

logger = logging.getLogger(__name__)

RECOVERY_BATCH_SIZE = 50


# ---------------------------------------------------------------------------
# Async task helpers
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@asynccontextmanager
async def worker_context() -> AsyncIterator[AppContext]:
    """Per-run service context; every task executes in a fresh event loop."""
    async with open_context(get_settings(), null_pool=True) as context:
        yield context


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name=PROCESS_TASK,
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=get_settings().task_soft_time_limit,
    time_limit=get_settings().task_time_limit,
)
def process_document(
    self: Task,
    *,
    document_id:  str,
    content:      dict[str, Any] | None = None,
    max_attempts: int | None = None,
) -> dict[str, Any]:
    return run_async(
        _process_document_async(
            task=self,
            document_id=uuid.UUID(document_id),
            content=content,
            max_attempts=max_attempts,
        )
    )


async def _process_document_async(
    task:         Task,
    document_id:  uuid.UUID,
    content:      dict[str, Any] | None,
    max_attempts: int | None,
) -> dict[str, Any]:
    policy  = RetryPolicy.from_settings(get_settings(), max_attempts)
    retries = task.request.retries or 0
    job_id  = getattr(task.request, "id", None)

    async with worker_context() as ctx:
        doc = await ctx.store.get_document(document_id)
        if doc is None:
            logger.error("Document not found | doc=%s", document_id)
            return {"status": "not_found", "document_id": str(document_id)}
        if job_id and doc.job_id and doc.job_id != job_id:
            logger.warning(
                "Superseded job skipped | doc=%s job=%s current=%s", document_id, job_id, doc.job_id,
            )
            return {"status": "superseded", "document_id": str(document_id), "job_id": job_id}

        logger.info(
            "Processing | doc=%s attempt=%d/%d", document_id, retries + 1, policy.max_attempts,
        )
        try:
            if content is None:
                content = await ctx.files.get_content(document_id)
                if content is None:
                    raise ValidationError(f"No parsed content stored for document {document_id}")

            result = await ctx.orchestrator.process(
                document_id, content, progress=_progress_reporter(task),
            )
            return result.as_dict()

        except NotFoundError:
            logger.error("Document not found | doc=%s", document_id)
            return {"status": "not_found", "document_id": str(document_id)}

        except ValidationError as exc:
            await ctx.orchestrator.mark_failed(document_id, exc.message)
            return {"status": DocumentStatus.FAILED.value, "document_id": str(document_id), "error": exc.message}

        except Exception as exc:
            if policy.can_retry(retries + 1):
                countdown = policy.backoff(retries)
                logger.warning(
                    "Processing error, retrying | doc=%s attempt=%d countdown=%.1fs error=%s",
                    document_id, retries + 1, countdown, exc,
                )
                raise task.retry(exc=exc, countdown=countdown, max_retries=policy.max_attempts - 1)

            logger.exception("Processing failed, attempts exhausted | doc=%s", document_id)
            await ctx.orchestrator.mark_failed(document_id, f"{type(exc).__name__}: {exc}")
            raise ProcessingFailure(
                f"Processing failed after {policy.max_attempts} attempts: {exc}",
                details={"document_id": str(document_id)},
            ) from exc


def _progress_reporter(task: Task):
    """PROGRESS state updates, only when running under a real task id."""
    if not getattr(task.request, "id", None):
        return None

    def report(stage: ProgressStage, percent: int) -> None:
        task.update_state(state="PROGRESS", meta={"stage": stage.value, "percent": percent})

    return report


# ---------------------------------------------------------------------------
# Stall recovery — runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name=RECOVER_TASK,
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def recover_stalled_documents() -> dict[str, int]:
    return run_async(_recover_stalled_documents_async())


async def _recover_stalled_documents_async() -> dict[str, int]:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    requeued = failed = skipped = 0

    async with worker_context() as ctx:
        stalled = await ctx.store.find_stale(
            DocumentStatus.PROCESSING,
            now - timedelta(seconds=settings.stall_timeout_seconds),
            limit=RECOVERY_BATCH_SIZE,
        )
        for doc in stalled:
            if doc.attempts >= settings.queue_max_attempts:
                await ctx.orchestrator.mark_failed(
                    doc.id, f"Processing stalled after {doc.attempts} attempts",
                )
                failed += 1
                continue
            await dispatch(ctx.store, ctx.queue, doc.id)
            requeued += 1
            logger.warning("Re-queued stalled document | doc=%s attempts=%d", doc.id, doc.attempts)

        pending = await ctx.store.find_stale(
            DocumentStatus.PENDING,
            now - timedelta(seconds=settings.pending_requeue_seconds),
            limit=RECOVERY_BATCH_SIZE,
        )
        abandoned = {
            doc.id
            for doc in await ctx.store.find_stale(
                DocumentStatus.PENDING,
                now - timedelta(seconds=settings.pending_job_lost_seconds),
                limit=RECOVERY_BATCH_SIZE,
            )
        }
        for doc in pending:
            if doc.job_id is not None and doc.id not in abandoned:
                state = await ctx.queue.job_state(doc.job_id)
                # None = backend unreachable; treat the job as alive.
                if state is None or state in LIVE_JOB_STATES:
                    skipped += 1
                    continue
            await dispatch(ctx.store, ctx.queue, doc.id, countdown=5)
            requeued += 1
            logger.info("Re-queued pending document | doc=%s previous_job=%s", doc.id, doc.job_id)

    return {"requeued": requeued, "failed": failed, "skipped": skipped}


# ---------------------------------------------------------------------------
# Queue statistics snapshot — runs every 15 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name=STATS_TASK,
    bind=False,
    soft_time_limit=10,
    time_limit=15,
)
def snapshot_queue_stats() -> dict[str, int]:
    return run_async(_snapshot_queue_stats_async())


async def _snapshot_queue_stats_async() -> dict[str, int]:
    async with worker_context() as ctx:
        stats = await ctx.queue.refresh_snapshot()
    return stats.model_dump(include={"waiting", "active", "delayed"})


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name=HEALTH_TASK)
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
