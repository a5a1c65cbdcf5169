"""
Celery Application Factory

Optional multi-process dispatch. The durable queue is the index_jobs table;
Celery messages carry no work, only a nudge ("a job may be available"), so a
lost or duplicated message never loses or duplicates a document.

Queue topology:
  documents.index   — process_next_job (one lease per message)
  documents.drain   — drain_queue (beat safety net, every 30 s)

Reliability settings mirror the lease model: acks_late so a killed worker's
message is redelivered, prefetch 1 so one process never hoards nudges.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docindex.core.config import get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

INDEX_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue("documents.index", exchange=INDEX_EXCHANGE, routing_key="documents.index", durable=True),
    Queue("documents.drain", exchange=INDEX_EXCHANGE, routing_key="documents.drain", durable=True),
)

TASK_ROUTES = {
    "docindex.workers.tasks.process_next_job": {"queue": "documents.index"},
    "docindex.workers.tasks.drain_queue":      {"queue": "documents.drain"},
}

DRAIN_INTERVAL_SECONDS = 30


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery("docindex")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.index",
        task_default_exchange="documents",
        task_default_routing_key="documents.index",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts: stage timeouts are enforced inside the pipeline ---
        task_soft_time_limit=settings.lease_seconds,
        task_time_limit=settings.lease_seconds + 60,

        # --- Results are not used; state lives in the database ---
        task_ignore_result=True,
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "drain-index-queue": {
                "task":     "docindex.workers.tasks.drain_queue",
                "schedule": DRAIN_INTERVAL_SECONDS,
                "options":  {"queue": "documents.drain"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docindex.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s", task_id, task.name, state)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task failed | task_id=%s error=%s", task_id, exception, exc_info=True)
