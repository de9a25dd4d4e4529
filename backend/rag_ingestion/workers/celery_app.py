"""
Celery Application Factory

Background work for the knowledge-base pipeline.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) as fallback for local dev.
Result backend: Redis (optional — document state lives in the record store).

Queue topology:
  documents.ingest   — per-document work (re-index); one queue so operations
                       on the same document are not spread across workers
  documents.retry    — beat-driven re-queue of failed documents
  search.ocr         — OCR staging index refresh (fire-and-forget from ingest)
  system.health      — internal health-check tasks

Task payloads carry ids and blob names only, never document bytes.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from rag_ingestion.core.config import settings
from rag_ingestion.core.logging import configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "documents.retry",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.retry",
        durable=True,
    ),
    Queue(
        "search.ocr",
        Exchange("search", type="direct"),
        routing_key="search.ocr",
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
    "rag_ingestion.workers.tasks.reindex_document":       {"queue": "documents.ingest"},
    "rag_ingestion.workers.tasks.retry_failed_documents": {"queue": "documents.retry"},
    "rag_ingestion.workers.tasks.refresh_ocr_index":      {"queue": "search.ocr"},
    "rag_ingestion.workers.tasks.health_check":           {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("rag_ingestion")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # Reject non-JSON messages
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        task_acks_late=True,         # ack only after task completes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_max_retries=3,
        task_default_retry_delay=60,    # seconds

        # OCR wait (30s) + embedding + upsert must fit comfortably
        task_soft_time_limit=300,
        task_time_limit=360,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "retry-failed-documents-every-5m": {
                "task":     "rag_ingestion.workers.tasks.retry_failed_documents",
                "schedule": 300,
                "options":  {"queue": "documents.retry"},
            },
        },

        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["rag_ingestion.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured task logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger=None, loglevel=None, **_):
    configure_logging(loglevel)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s blob=%s",
        task_id, task.name,
        kwargs.get("document_id", "?"),
        kwargs.get("blob_name", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "?"), exception,
        exc_info=True,
    )
