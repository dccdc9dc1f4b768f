"""
Job Queue — thin async facade over Celery.

enqueue()           publishes one process_document job per upload / reprocess.
dispatch()          records a fresh job id on the document, then publishes
                    under that id. The worker only runs the job the document
                    currently names, so republishing never yields two runs.
job_state()         result-backend state of a published job.
stats()             read-only counters for the status route, served from the
                    snapshot the beat task writes; never inspects workers.
refresh_snapshot()  broker depth + worker inspection, written to Redis.

    waiting    messages in the broker queue + jobs reserved by workers
    active     jobs currently executing
    delayed    jobs scheduled with an ETA (retry backoff, recovery countdown)
    completed  lifetime successes  (Redis counter, maintained by task signals)
    failed     lifetime failures   (Redis counter, maintained by task signals)

Publishing and broker inspection are blocking, so they run in the default
thread executor to keep the event loop free.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any
from uuid import UUID

from celery import Celery
from kombu.exceptions import KombuError
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from pdfsearch.core.config import Settings
from pdfsearch.schemas.documents import QueueStats
from pdfsearch.store.metadata import MetadataStore
from pdfsearch.workers.celery_app import COMPLETED_COUNTER, FAILED_COUNTER, PROCESS_QUEUE

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5

STATS_SNAPSHOT_KEY = "pdfsearch:queue:snapshot"
STATS_SNAPSHOT_TTL = 60   # seconds; refreshed every 15 s by beat

# States in which a published job will still run (PENDING also covers
# "queued, not yet picked up").
LIVE_JOB_STATES = frozenset({"PENDING", "RECEIVED", "STARTED", "RETRY", "PROGRESS"})


def new_job_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts  total runs allowed, first attempt included
    backoff(n)    delay before retry n+1: base * 2**n, capped at max_delay
    """
    max_attempts: int = 3
    base_delay:   float = 2.0
    max_delay:    float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings, max_attempts: int | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts or settings.queue_max_attempts,
            base_delay=settings.queue_backoff_base_seconds,
            max_delay=settings.queue_backoff_max_seconds,
        )

    def backoff(self, retries: int) -> float:
        return min(self.base_delay * (2 ** retries), self.max_delay)

    def can_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


# ---------------------------------------------------------------------------
# Queue facade
# ---------------------------------------------------------------------------

class JobQueue:

    def __init__(
        self,
        app:        Celery,
        redis:      Redis | None = None,
        queue_name: str = PROCESS_QUEUE,
    ) -> None:
        self._app        = app
        self._redis      = redis
        self._queue_name = queue_name

    async def enqueue(
        self,
        document_id:  UUID | str,
        content:      dict[str, Any] | None = None,
        *,
        job_id:       str | None = None,
        priority:     int = DEFAULT_PRIORITY,
        max_attempts: int | None = None,
        countdown:    float | None = None,
    ) -> str:
        """
        Publish a processing job and return its id.

        `content` may be omitted; the worker then loads the stored parser
        output for the document. `job_id` becomes the Celery task id.
        """
        from pdfsearch.workers.tasks import process_document

        kwargs = {
            "document_id":  str(document_id),
            "content":      content,
            "max_attempts": max_attempts,
        }
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            partial(
                process_document.apply_async,
                kwargs=kwargs,
                task_id=job_id,
                queue=self._queue_name,
                priority=priority,
                countdown=countdown,
            ),
        )
        logger.info(
            "Job enqueued | doc=%s job=%s priority=%d countdown=%s",
            document_id, result.id, priority, countdown,
        )
        return result.id

    async def job_state(self, job_id: str) -> str | None:
        """Celery state of `job_id`, or None if the result backend is unreachable."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: self._app.AsyncResult(job_id).state)
        except (KombuError, RedisError, OSError) as exc:
            logger.warning("Job state unavailable | job=%s error=%s", job_id, exc)
            return None

    async def stats(self) -> QueueStats | None:
        """Latest snapshot plus lifetime counters; None until a snapshot exists."""
        if self._redis is None:
            return None
        try:
            snapshot, completed, failed = await self._redis.mget(
                STATS_SNAPSHOT_KEY, COMPLETED_COUNTER, FAILED_COUNTER,
            )
        except (RedisError, OSError) as exc:
            logger.warning("Queue stats unavailable | error=%s", exc)
            return None
        if snapshot is None:
            return None
        try:
            stats = QueueStats.model_validate_json(snapshot)
        except PydanticValidationError:
            logger.warning("Discarding corrupt queue snapshot")
            return None
        stats.completed = int(completed or 0)
        stats.failed    = int(failed or 0)
        return stats

    async def refresh_snapshot(self) -> QueueStats:
        """Inspect broker and workers, store the result for stats()."""
        loop = asyncio.get_running_loop()
        stats = await loop.run_in_executor(None, self._broker_stats)
        if self._redis is not None:
            try:
                await self._redis.set(
                    STATS_SNAPSHOT_KEY,
                    stats.model_dump_json(include={"waiting", "active", "delayed"}),
                    ex=STATS_SNAPSHOT_TTL,
                )
            except (RedisError, OSError) as exc:
                logger.warning("Queue snapshot not stored | error=%s", exc)
        return stats

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _broker_stats(self) -> QueueStats:
        stats = QueueStats()
        try:
            with self._app.connection_for_read() as conn:
                declared = conn.default_channel.queue_declare(queue=self._queue_name, passive=True)
                stats.waiting = int(declared.message_count)
        except (KombuError, OSError) as exc:
            logger.warning("Queue depth unavailable | queue=%s error=%s", self._queue_name, exc)

        try:
            inspector = self._app.control.inspect(timeout=1.0)
            active    = inspector.active() or {}
            reserved  = inspector.reserved() or {}
            scheduled = inspector.scheduled() or {}
        except (KombuError, OSError) as exc:
            logger.warning("Worker inspection unavailable | error=%s", exc)
            return stats

        stats.active   = sum(len(tasks) for tasks in active.values())
        stats.waiting += sum(len(tasks) for tasks in reserved.values())
        stats.delayed  = sum(len(tasks) for tasks in scheduled.values())
        return stats


# ---------------------------------------------------------------------------
# Dispatch — the only way documents get a job
# ---------------------------------------------------------------------------

async def dispatch(
    store:       MetadataStore,
    queue:       JobQueue,
    document_id: UUID,
    *,
    countdown:   float | None = None,
) -> str:
    """
    Name a new job on the document, then publish it under that id.

    On a broker error the name is cleared again (the document then reads as
    "no job", which the recovery task re-dispatches) and the error propagates.
    """
    job_id = new_job_id()
    await store.assign_job(document_id, job_id)
    try:
        return await queue.enqueue(document_id, job_id=job_id, countdown=countdown)
    except (KombuError, OSError):
        await store.assign_job(document_id, None)
        raise
