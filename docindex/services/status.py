"""
Status Tracker

The only component that moves a document through the indexing state
machine:

    PENDING ──lease──► PROCESSING ──► INDEXED
                           │   └────► FAILED
                           └─retry──► PENDING
    INDEXED | FAILED ──reindex──► PENDING

Every transition is a compare-and-set UPDATE on the expected current status.
Worker-side commits additionally hold the job lease in the same transaction,
so a worker whose lease was taken over (or whose document was deleted)
cannot overwrite anyone else's result: its commit raises LeaseLost and the
transaction rolls back.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from docindex.core.errors import InvalidState, InvariantViolation, LeaseLost
from docindex.db.session import session_scope
from docindex.models.documents import (
    Document,
    Failed,
    IndexState,
    Indexed,
    Pending,
    Processing,
    state_columns,
    utcnow,
)
from docindex.queue.job_queue import Clock, JobQueue, LeasedJob
from docindex.schemas.documents import TERMINAL_STATUSES, IndexStatus

logger = logging.getLogger(__name__)


class StatusTracker:

    def __init__(
        self,
        session_factory: sessionmaker,
        queue: JobQueue,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._clock = clock

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _transition(
        self,
        session: Session,
        document_id: UUID,
        expected: tuple[IndexStatus, ...],
        state: IndexState,
    ) -> bool:
        updated = session.execute(
            update(Document)
            .where(Document.id == document_id, Document.index_status.in_(expected))
            .values(**state_columns(state), updated_at=self._clock())
            .execution_options(synchronize_session=False)
        ).rowcount
        return updated == 1

    def _commit(
        self,
        lease: LeasedJob,
        state: IndexState,
        *,
        retry_delay: float | None = None,
        error: str | None = None,
    ) -> None:
        try:
            with session_scope(self._session_factory) as session:
                if retry_delay is None:
                    self._queue.complete(session, lease)
                else:
                    self._queue.release_for_retry(session, lease, retry_delay, error or "")
                if not self._transition(session, lease.document_id, (IndexStatus.PROCESSING,), state):
                    raise LeaseLost(lease.document_id, f"document left PROCESSING before {state.status.value}")
        except LeaseLost as exc:
            logger.warning(
                "Commit discarded | doc=%s worker=%s attempt=%d target=%s reason=%s",
                lease.document_id, lease.worker_id, lease.attempt, state.status.value, exc.detail,
            )
            raise

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    def mark_processing(self, session: Session, lease: LeasedJob) -> None:
        """
        on_lease hook: PENDING → PROCESSING. A document already in PROCESSING
        (previous lease expired) stays there.
        """
        moved = self._transition(
            session,
            lease.document_id,
            (IndexStatus.PENDING, IndexStatus.PROCESSING),
            Processing(),
        )
        if not moved:
            raise InvariantViolation(
                f"leased job for document {lease.document_id} which is not PENDING/PROCESSING"
            )
        logger.info(
            "Status PROCESSING | doc=%s worker=%s attempt=%d",
            lease.document_id, lease.worker_id, lease.attempt,
        )

    def commit_indexed(self, lease: LeasedJob, chunk_count: int) -> Indexed:
        state = Indexed(indexed_at=self._clock(), chunk_count=chunk_count)
        self._commit(lease, state)
        logger.info(
            "Status INDEXED | doc=%s chunks=%d attempt=%d",
            lease.document_id, chunk_count, lease.attempt,
        )
        return state

    def commit_failed(self, lease: LeasedJob, message: str) -> Failed:
        state = Failed(error_message=message)
        self._commit(lease, state)
        logger.warning(
            "Status FAILED | doc=%s attempt=%d error=%s",
            lease.document_id, lease.attempt, message,
        )
        return state

    def commit_retry(self, lease: LeasedJob, delay_seconds: float, message: str) -> Pending:
        state = Pending()
        self._commit(lease, state, retry_delay=delay_seconds, error=message)
        logger.info(
            "Status PENDING (retry) | doc=%s next_attempt=%d delay_s=%.2f error=%s",
            lease.document_id, lease.attempt + 1, delay_seconds, message,
        )
        return state

    # ------------------------------------------------------------------
    # Caller transitions
    # ------------------------------------------------------------------

    def reset_for_reindex(self, session: Session, document: Document) -> None:
        """INDEXED | FAILED → PENDING, inside the caller's transaction."""
        current = document.index_status
        if current not in TERMINAL_STATUSES:
            raise InvalidState(document.id, current.value, "re-index")
        if not self._transition(session, document.id, (current,), Pending()):
            # Someone moved it between our read and this write
            raise InvalidState(document.id, "changing concurrently", "re-index")
        logger.info("Status PENDING (reindex) | doc=%s previous=%s", document.id, current.value)
