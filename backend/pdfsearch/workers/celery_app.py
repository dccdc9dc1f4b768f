"""
Celery Application Factory

Configures the Celery app for asynchronous document processing.
Broker: Redis (redis://) by default; any kombu transport works.
Result backend: Redis — holds task state and PROGRESS updates only; the
document lifecycle itself is tracked in the database.

Queue topology:
  documents.process      — priority queue, one job per upload / reprocess
  documents.maintenance  — beat-driven stall recovery + queue stats snapshot
  system.health          — internal health-check tasks

Payload note: jobs carry ids (and optionally parsed content), never raw
file bytes; without content in the payload the worker loads it from storage.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, task_retry, task_success
from kombu import Exchange, Queue
from redis import Redis
from redis.exceptions import RedisError

from pdfsearch.core.config import settings

logger = logging.getLogger(__name__)

PROCESS_TASK  = "pdfsearch.workers.tasks.process_document"
RECOVER_TASK  = "pdfsearch.workers.tasks.recover_stalled_documents"
STATS_TASK    = "pdfsearch.workers.tasks.snapshot_queue_stats"
HEALTH_TASK   = "pdfsearch.workers.tasks.health_check"

PROCESS_QUEUE = "documents.process"

COMPLETED_COUNTER = "pdfsearch:jobs:completed"
FAILED_COUNTER    = "pdfsearch:jobs:failed"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        PROCESS_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=PROCESS_QUEUE,
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "documents.maintenance",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintenance",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    PROCESS_TASK: {"queue": PROCESS_QUEUE},
    RECOVER_TASK: {"queue": "documents.maintenance"},
    STATS_TASK:   {"queue": "documents.maintenance"},
    HEALTH_TASK:  {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("pdfsearch")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=PROCESS_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=PROCESS_QUEUE,

        # --- Reliability ---
        task_acks_late=True,            # ack only after the run finishes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one job at a time per worker process
        task_track_started=True,

        # --- Timeouts ---
        task_soft_time_limit=settings.task_soft_time_limit,
        task_time_limit=settings.task_time_limit,

        # --- Redis visibility: redeliver unacked jobs after the hard limit ---
        broker_transport_options={"visibility_timeout": settings.task_time_limit + 60},

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stall recovery, queue stats snapshot) ---
        beat_schedule={
            "recover-stalled-documents-every-60s": {
                "task":     RECOVER_TASK,
                "schedule": 60,
                "options":  {"queue": "documents.maintenance"},
            },
            "snapshot-queue-stats-every-15s": {
                "task":     STATS_TASK,
                "schedule": 15,
                "options":  {"queue": "documents.maintenance"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to bound memory (OCR)
    )

    app.autodiscover_tasks(["pdfsearch.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Job counters — completed / failed totals for queue statistics
# ---------------------------------------------------------------------------

def _bump_counter(key: str) -> None:
    try:
        client = Redis.from_url(settings.redis_url)
        try:
            client.incr(key)
        finally:
            client.close()
    except (RedisError, OSError) as exc:
        logger.warning("Job counter update failed | key=%s error=%s", key, exc)


# ---------------------------------------------------------------------------
# Celery signals — structured logging per task
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_retry.connect
def on_task_retry(request, reason, einfo, **_):
    logger.warning(
        "Task retry | task_id=%s doc=%s retries=%s reason=%s",
        request.id, (request.kwargs or {}).get("document_id", "-"), request.retries, reason,
    )


@task_success.connect
def on_task_success(sender=None, result=None, **_):
    if sender is not None and sender.name == PROCESS_TASK:
        _bump_counter(COMPLETED_COUNTER)


@task_failure.connect
def on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
    )
    if sender is not None and sender.name == PROCESS_TASK:
        _bump_counter(FAILED_COUNTER)
