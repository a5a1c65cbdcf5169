"""
Durable lease-based job queue.

Jobs are rows in index_jobs, in the same database as the documents, so
enqueueing a job commits atomically with the status change that caused it.

Leasing
───────
  A job is available when  available_at <= now  and it is either unleased or
  its visibility_deadline has passed. lease() claims the oldest available job
  with a conditional UPDATE that compares the previous lease_token, so two
  workers racing for the same row cannot both win. On PostgreSQL the
  candidate SELECT also takes FOR UPDATE SKIP LOCKED.

  Re-leasing a job whose lease expired counts the dead worker's dequeue:
  attempt is incremented before the new lease starts.

Lease-guarded operations
────────────────────────
  complete(), release_for_retry() and verify() match on (job id, lease_token).
  When the token no longer matches (another worker re-leased the job, or the
  document was deleted) they raise LeaseLost and change nothing.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from docindex.core.errors import InvalidState, LeaseLost
from docindex.db.session import session_scope
from docindex.models.documents import IndexJob, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Conditional UPDATE retries when another worker wins the same candidate row
_CLAIM_ATTEMPTS = 5


@dataclass(frozen=True)
class LeasedJob:
    job_id:              UUID
    document_id:         UUID
    lease_token:         UUID
    attempt:             int
    worker_id:           str
    visibility_deadline: datetime


@dataclass(frozen=True)
class QueueStats:
    queued:  int   # available now, not leased
    delayed: int   # waiting out a retry backoff
    leased:  int   # held by a live lease
    expired: int   # lease ran out; available for re-lease

    @property
    def total(self) -> int:
        return self.queued + self.delayed + self.leased + self.expired


OnLease = Callable[[Session, LeasedJob], None]


class JobQueue:

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Clock = utcnow,
        poll_interval: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Producer side, inside the caller's transaction
    # ------------------------------------------------------------------

    def enqueue(self, session: Session, document_id: UUID, *, delay_seconds: float = 0.0) -> IndexJob:
        existing = session.scalar(select(IndexJob.id).where(IndexJob.document_id == document_id))
        if existing is not None:
            raise InvalidState(document_id, "already queued", "enqueue")

        now = self._clock()
        job = IndexJob(
            document_id=document_id,
            attempt=1,
            enqueued_at=now,
            available_at=now + timedelta(seconds=delay_seconds),
        )
        session.add(job)
        session.flush()
        logger.info("Job enqueued | doc=%s job=%s", document_id, job.id)
        return job

    def remove_for_document(self, session: Session, document_id: UUID) -> int:
        removed = session.execute(
            delete(IndexJob).where(IndexJob.document_id == document_id)
        ).rowcount
        if removed:
            logger.info("Job removed | doc=%s", document_id)
        return removed

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def lease(
        self,
        worker_id: str,
        lease_seconds: float,
        on_lease: OnLease | None = None,
    ) -> LeasedJob | None:
        """
        Claim one available job, or return None when nothing is available.

        on_lease runs in the claiming transaction; if it raises, the claim is
        rolled back along with whatever on_lease wrote.
        """
        with session_scope(self._session_factory) as session:
            now = self._clock()
            for _ in range(_CLAIM_ATTEMPTS):
                candidate = self._next_candidate(session, now)
                if candidate is None:
                    return None

                expired = candidate.lease_token is not None
                attempt = candidate.attempt + 1 if expired else candidate.attempt
                token = uuid.uuid4()
                deadline = now + timedelta(seconds=lease_seconds)

                previous = (
                    IndexJob.lease_token == candidate.lease_token
                    if expired
                    else IndexJob.lease_token.is_(None)
                )
                claimed = session.execute(
                    update(IndexJob)
                    .where(IndexJob.id == candidate.id, previous)
                    .values(
                        lease_token=token,
                        leased_by=worker_id,
                        visibility_deadline=deadline,
                        attempt=attempt,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed != 1:
                    logger.debug("Lease race lost | job=%s worker=%s", candidate.id, worker_id)
                    continue

                leased = LeasedJob(
                    job_id=candidate.id,
                    document_id=candidate.document_id,
                    lease_token=token,
                    attempt=attempt,
                    worker_id=worker_id,
                    visibility_deadline=deadline,
                )
                if expired:
                    logger.warning(
                        "Expired lease reclaimed | doc=%s previous_worker=%s worker=%s attempt=%d",
                        candidate.document_id, candidate.leased_by, worker_id, attempt,
                    )
                if on_lease is not None:
                    on_lease(session, leased)
                logger.info(
                    "Job leased | doc=%s worker=%s attempt=%d deadline=%s",
                    leased.document_id, worker_id, attempt, deadline.isoformat(),
                )
                return leased
        return None

    def dequeue(
        self,
        worker_id: str,
        lease_seconds: float,
        wait_seconds: float,
        stop_event: threading.Event | None = None,
        on_lease: OnLease | None = None,
    ) -> LeasedJob | None:
        """
        Blocking lease with a bounded wait. Sleeps between empty polls,
        doubling the sleep up to the remaining wait; returns None on timeout
        or as soon as stop_event is set.
        """
        deadline = time.monotonic() + wait_seconds
        sleep = self._poll_interval
        while True:
            if stop_event is not None and stop_event.is_set():
                return None
            leased = self.lease(worker_id, lease_seconds, on_lease)
            if leased is not None:
                return leased

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            pause = min(sleep, remaining)
            if stop_event is not None:
                if stop_event.wait(pause):
                    return None
            else:
                time.sleep(pause)
            sleep = min(sleep * 2, max(wait_seconds, self._poll_interval))

    # ------------------------------------------------------------------
    # Lease-guarded operations, inside the caller's transaction
    # ------------------------------------------------------------------

    @staticmethod
    def _held(lease: LeasedJob):
        return and_(IndexJob.id == lease.job_id, IndexJob.lease_token == lease.lease_token)

    def verify(self, session: Session, lease: LeasedJob) -> None:
        held = session.scalar(select(IndexJob.id).where(self._held(lease)))
        if held is None:
            raise LeaseLost(lease.document_id, "lease no longer held")

    def complete(self, session: Session, lease: LeasedJob) -> None:
        removed = session.execute(delete(IndexJob).where(self._held(lease))).rowcount
        if removed != 1:
            raise LeaseLost(lease.document_id, "job gone or re-leased before completion")

    def release_for_retry(
        self,
        session: Session,
        lease: LeasedJob,
        delay_seconds: float,
        error: str,
    ) -> datetime:
        available_at = self._clock() + timedelta(seconds=delay_seconds)
        released = session.execute(
            update(IndexJob)
            .where(self._held(lease))
            .values(
                attempt=lease.attempt + 1,
                lease_token=None,
                leased_by=None,
                visibility_deadline=None,
                available_at=available_at,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if released != 1:
            raise LeaseLost(lease.document_id, "job gone or re-leased before retry release")
        return available_at

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_job(self, document_id: UUID) -> IndexJob | None:
        with session_scope(self._session_factory) as session:
            return session.scalar(select(IndexJob).where(IndexJob.document_id == document_id))

    def stats(self) -> QueueStats:
        now = self._clock()
        unleased = IndexJob.lease_token.is_(None)
        leased = IndexJob.lease_token.is_not(None)
        with session_scope(self._session_factory) as session:
            def count(*conditions) -> int:
                return session.scalar(select(func.count()).select_from(IndexJob).where(*conditions))

            return QueueStats(
                queued=count(unleased, IndexJob.available_at <= now),
                delayed=count(unleased, IndexJob.available_at > now),
                leased=count(leased, IndexJob.visibility_deadline > now),
                expired=count(leased, IndexJob.visibility_deadline <= now),
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _next_candidate(self, session: Session, now: datetime) -> IndexJob | None:
        stmt = (
            select(IndexJob)
            .where(
                IndexJob.available_at <= now,
                or_(IndexJob.lease_token.is_(None), IndexJob.visibility_deadline <= now),
            )
            .order_by(IndexJob.available_at, IndexJob.enqueued_at)
            .limit(1)
        )
        if session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        # Fresh read every pass; an identity-map hit would hide a rival's claim
        return session.scalars(stmt.execution_options(populate_existing=True)).first()
