"""
Pipeline Worker

One run_once() call processes at most one job end to end:

  1. dequeue   — lease the oldest available job (bounded wait); the lease
                 transaction also moves the document to PROCESSING
  2. extract   — fetch the blob and extract text         (extract timeout)
  3. chunk     — deterministic overlapping windows
  4. index     — replace the document's chunk set        (index timeout)
  5. commit    — INDEXED with chunk_count / indexed_at

Failure handling at the worker boundary:

  PermanentError                → FAILED immediately
  TransientError                → PENDING + delayed re-lease while attempts
                                  remain, FAILED "(gave up after N attempts)"
                                  once they are exhausted
  InvariantViolation / anything → same as transient, with a generic message;
                                  details go to the log only
  LeaseLost                     → result discarded; whoever holds the job now
                                  owns the document

Stage timeouts are shorter than the lease, so a stuck stage gives the job
back (as a retry) before another worker could reclaim it.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar
from uuid import UUID

from docindex.core.config import Settings
from docindex.core.errors import (
    InvariantViolation,
    LeaseLost,
    PermanentError,
    StageTimeout,
    TransientError,
)
from docindex.db.session import session_scope
from docindex.indexing.base import Indexer
from docindex.models.documents import Document
from docindex.processing.chunking import Chunker
from docindex.processing.extractor import ExtractorRegistry
from docindex.queue.job_queue import JobQueue, LeasedJob
from docindex.services.status import StatusTracker
from docindex.storage.blob import BlobStore
from docindex.workers.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERNAL_ERROR_MESSAGE = "Internal processing error"


class Outcome(str, Enum):
    INDEXED   = "indexed"
    FAILED    = "failed"
    RETRY     = "retry"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class JobResult:
    document_id: UUID
    attempt:     int
    outcome:     Outcome
    chunk_count: int | None = None
    error:       str | None = None


class PipelineWorker:
    """
    Not thread-safe: one instance per worker thread. Collaborators may be
    shared between instances.
    """

    def __init__(
        self,
        worker_id: str,
        *,
        session_factory,
        queue: JobQueue,
        tracker: StatusTracker,
        blob_store: BlobStore,
        registry: ExtractorRegistry,
        chunker: Chunker,
        indexer: Indexer,
        retry_policy: RetryPolicy,
        lease_seconds: float,
        extract_timeout: float,
        index_timeout: float,
        wait_seconds: float = 5.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        if extract_timeout >= lease_seconds or index_timeout >= lease_seconds:
            raise ValueError("stage timeouts must be shorter than the lease")
        self.worker_id = worker_id
        self._session_factory = session_factory
        self._queue = queue
        self._tracker = tracker
        self._blobs = blob_store
        self._registry = registry
        self._chunker = chunker
        self._indexer = indexer
        self._policy = retry_policy
        self._lease_seconds = lease_seconds
        self._extract_timeout = extract_timeout
        self._index_timeout = index_timeout
        self._wait_seconds = wait_seconds
        self._stop_event = stop_event
        self._stages = self._new_stage_executor()

    @classmethod
    def from_settings(cls, worker_id: str, settings: Settings, **components) -> "PipelineWorker":
        return cls(
            worker_id,
            retry_policy=RetryPolicy.from_settings(settings),
            lease_seconds=settings.lease_seconds,
            extract_timeout=settings.extract_timeout_seconds,
            index_timeout=settings.index_timeout_seconds,
            wait_seconds=settings.dequeue_wait_seconds,
            **components,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_once(self, wait_seconds: float | None = None) -> JobResult | None:
        """Lease and process one job; None when nothing arrived within the wait."""
        lease = self._queue.dequeue(
            self.worker_id,
            self._lease_seconds,
            self._wait_seconds if wait_seconds is None else wait_seconds,
            stop_event=self._stop_event,
            on_lease=self._tracker.mark_processing,
        )
        if lease is None:
            return None
        return self.process(lease)

    def process(self, lease: LeasedJob) -> JobResult:
        t0 = time.monotonic()
        if lease.attempt > self._policy.max_attempts:
            # Earlier leases expired without a commit (worker crash or hang)
            result = self._fail(
                lease,
                f"Processing did not complete (gave up after {self._policy.max_attempts} attempts)",
            )
        else:
            result = self._run_stages(lease)

        logger.info(
            "Job finished | doc=%s worker=%s attempt=%d outcome=%s elapsed_ms=%.1f",
            lease.document_id, self.worker_id, lease.attempt,
            result.outcome.value, (time.monotonic() - t0) * 1000,
        )
        return result

    def close(self) -> None:
        self._stages.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_stages(self, lease: LeasedJob) -> JobResult:
        try:
            blob_ref, mime_type = self._load_source(lease)

            text = self._with_timeout(
                "extract",
                self._extract_timeout,
                lambda: self._registry.extract(mime_type, self._blobs.fetch(blob_ref)),
            )
            chunks = self._chunker.chunk(text)
            logger.info(
                "Chunked | doc=%s chars=%d chunks=%d", lease.document_id, len(text), len(chunks),
            )

            count = self._with_timeout(
                "index",
                self._index_timeout,
                lambda: self._indexer.replace_chunks(
                    lease.document_id,
                    chunks,
                    guard=lambda session: self._queue.verify(session, lease),
                ),
            )
            self._tracker.commit_indexed(lease, count)
            return JobResult(lease.document_id, lease.attempt, Outcome.INDEXED, chunk_count=count)

        except LeaseLost as exc:
            logger.warning(
                "Result discarded | doc=%s worker=%s reason=%s",
                lease.document_id, self.worker_id, exc.detail,
            )
            return JobResult(lease.document_id, lease.attempt, Outcome.DISCARDED)
        except PermanentError as exc:
            logger.warning("Permanent failure | doc=%s error=%s", lease.document_id, exc)
            return self._fail(lease, exc.public_message)
        except TransientError as exc:
            logger.warning(
                "Transient failure | doc=%s attempt=%d error_type=%s error=%s",
                lease.document_id, lease.attempt, type(exc).__name__, exc,
            )
            return self._retry_or_fail(lease, exc.public_message)
        except InvariantViolation as exc:
            logger.error("Invariant violation | doc=%s detail=%s", lease.document_id, exc.detail)
            return self._retry_or_fail(lease, exc.public_message)
        except Exception:
            logger.exception("Unexpected pipeline error | doc=%s", lease.document_id)
            return self._retry_or_fail(lease, INTERNAL_ERROR_MESSAGE)

    def _load_source(self, lease: LeasedJob) -> tuple[str, str]:
        with session_scope(self._session_factory) as session:
            document = session.get(Document, lease.document_id)
            if document is None:
                raise LeaseLost(lease.document_id, "document deleted before processing")
            return document.blob_ref, document.mime_type

    def _new_stage_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.worker_id}-stage")

    def _with_timeout(self, stage: str, seconds: float, fn: Callable[[], T]) -> T:
        future = self._stages.submit(fn)
        try:
            return future.result(timeout=seconds)
        except FutureTimeout:
            # A running stage cannot be interrupted: abandon its thread and
            # give later stages a fresh executor. A late result is rejected
            # by the lease guard.
            future.cancel()
            self._stages.shutdown(wait=False, cancel_futures=True)
            self._stages = self._new_stage_executor()
            logger.warning(
                "Stage abandoned | worker=%s stage=%s timeout_s=%s", self.worker_id, stage, seconds,
            )
            raise StageTimeout(stage, seconds) from None

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _retry_or_fail(self, lease: LeasedJob, message: str) -> JobResult:
        if not self._policy.should_retry(lease.attempt):
            return self._fail(lease, f"{message} (gave up after {lease.attempt} attempts)")

        delay = self._policy.delay_for(lease.attempt)
        try:
            self._tracker.commit_retry(lease, delay, message)
        except LeaseLost:
            return JobResult(lease.document_id, lease.attempt, Outcome.DISCARDED, error=message)
        return JobResult(lease.document_id, lease.attempt, Outcome.RETRY, error=message)

    def _fail(self, lease: LeasedJob, message: str) -> JobResult:
        try:
            self._tracker.commit_failed(lease, message)
        except LeaseLost:
            return JobResult(lease.document_id, lease.attempt, Outcome.DISCARDED, error=message)
        return JobResult(lease.document_id, lease.attempt, Outcome.FAILED, error=message)
