"""
Celery Tasks — thin wrappers around PipelineWorker.run_once()

Task: process_next_job
  Leases at most one job from index_jobs and runs it through the pipeline.
  The document_id kwarg is informational only: whichever job is oldest and
  available gets processed, so nudges never bypass queue ordering.

Task: drain_queue
  Beat safety net. Processes available jobs until the queue is empty or
  max_jobs is reached; picks up work whose nudge was lost and jobs whose
  retry delay or lease has expired.
"""

from __future__ import annotations

import logging
import os
import socket
from functools import lru_cache
from typing import Any

from docindex.core.config import get_settings
from docindex.workers.celery_app import celery_app
from docindex.workers.pipeline import PipelineWorker

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_LIMIT = 100


@lru_cache(maxsize=1)
def get_worker() -> PipelineWorker:
    """One PipelineWorker per Celery process (prefork children each get their own)."""
    from docindex.services.container import build_components

    worker_id = f"celery-{socket.gethostname()}-{os.getpid()}"
    return build_components(get_settings()).make_worker(worker_id)


def _summary(result) -> dict[str, Any]:
    if result is None:
        return {"status": "idle"}
    return {
        "status":      result.outcome.value,
        "document_id": str(result.document_id),
        "attempt":     result.attempt,
        "chunk_count": result.chunk_count,
    }


@celery_app.task(
    name="docindex.workers.tasks.process_next_job",
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_next_job(document_id: str | None = None) -> dict[str, Any]:
    result = get_worker().run_once(wait_seconds=0)
    if result is None:
        logger.debug("Nothing to lease | hint_doc=%s", document_id)
    return _summary(result)


@celery_app.task(name="docindex.workers.tasks.drain_queue")
def drain_queue(max_jobs: int = DEFAULT_DRAIN_LIMIT) -> dict[str, Any]:
    worker = get_worker()
    outcomes: dict[str, int] = {}
    processed = 0
    while processed < max_jobs:
        result = worker.run_once(wait_seconds=0)
        if result is None:
            break
        processed += 1
        outcomes[result.outcome.value] = outcomes.get(result.outcome.value, 0) + 1

    if processed:
        logger.info("Queue drained | processed=%d outcomes=%s", processed, outcomes)
    return {"processed": processed, "outcomes": outcomes}
