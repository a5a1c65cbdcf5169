"""
Relational chunk index.

Chunks live in document_chunks next to their documents, so replacing a
document's chunk set is one DELETE + one bulk INSERT inside one transaction.
Keyword search loads the chunks of INDEXED documents in scope and ranks them
with BM25.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from docindex.core.errors import IndexUnavailable, InvariantViolation
from docindex.db.session import session_scope
from docindex.indexing.base import Indexer, SearchHit, WriteGuard
from docindex.indexing.bm25 import Candidate, ChunkBM25Index
from docindex.models.documents import Chunk, Document, utcnow
from docindex.processing.chunking import TextChunk
from docindex.schemas.documents import IndexStatus

logger = logging.getLogger(__name__)

# Upper bound on chunks pulled into one BM25 scoring pass
DEFAULT_CANDIDATE_LIMIT = 5000


def check_ordinals(chunks: Sequence[TextChunk]) -> None:
    ordinals = [c.ordinal for c in chunks]
    if ordinals != list(range(len(chunks))):
        raise InvariantViolation(
            f"chunk ordinals must be 0..{len(chunks) - 1} in order, got {ordinals[:10]}"
        )


class SqlIndexer(Indexer):

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    ) -> None:
        self._session_factory = session_factory
        self._candidate_limit = candidate_limit

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace_chunks(
        self,
        document_id: UUID,
        chunks: Sequence[TextChunk],
        *,
        guard: WriteGuard | None = None,
    ) -> int:
        check_ordinals(chunks)
        t0 = time.monotonic()
        now = utcnow()
        try:
            with session_scope(self._session_factory) as session:
                if guard is not None:
                    guard(session)
                removed = session.execute(
                    delete(Chunk).where(Chunk.document_id == document_id)
                ).rowcount
                if chunks:
                    session.execute(
                        insert(Chunk),
                        [
                            {
                                "document_id":  document_id,
                                "ordinal":      c.ordinal,
                                "text":         c.text,
                                "start_offset": c.start_offset,
                                "end_offset":   c.end_offset,
                                "created_at":   now,
                            }
                            for c in chunks
                        ],
                    )
        except SQLAlchemyError as exc:
            logger.error(
                "Chunk replace failed | doc=%s error_type=%s error=%s",
                document_id, type(exc).__name__, exc,
            )
            raise IndexUnavailable(str(exc)) from exc

        logger.info(
            "Chunks replaced | doc=%s removed=%d inserted=%d elapsed_ms=%.1f",
            document_id, removed, len(chunks), (time.monotonic() - t0) * 1000,
        )
        return len(chunks)

    def delete_chunks(self, document_id: UUID, *, session: Session | None = None) -> int:
        stmt = delete(Chunk).where(Chunk.document_id == document_id)
        try:
            if session is not None:
                removed = session.execute(stmt).rowcount
            else:
                with session_scope(self._session_factory) as own:
                    removed = own.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise IndexUnavailable(str(exc)) from exc
        logger.info("Chunks deleted | doc=%s removed=%d", document_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_chunks(self, document_id: UUID) -> list[Chunk]:
        with session_scope(self._session_factory) as session:
            return list(
                session.scalars(
                    select(Chunk)
                    .where(Chunk.document_id == document_id)
                    .order_by(Chunk.ordinal)
                )
            )

    def count_chunks(self, document_id: UUID) -> int:
        with session_scope(self._session_factory) as session:
            return session.scalar(
                select(func.count()).select_from(Chunk).where(Chunk.document_id == document_id)
            )

    def search(
        self,
        query: str,
        *,
        project_id: str | None = None,
        top_k: int = 10,
    ) -> list[SearchHit]:
        stmt = (
            select(Chunk.document_id, Chunk.ordinal, Chunk.text)
            .join(Document, Document.id == Chunk.document_id)
            .where(Document.index_status == IndexStatus.INDEXED)
            .order_by(Document.created_at.desc(), Chunk.document_id, Chunk.ordinal)
            .limit(self._candidate_limit)
        )
        if project_id is not None:
            stmt = stmt.where(Document.project_id == project_id)

        try:
            with session_scope(self._session_factory) as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise IndexUnavailable(str(exc)) from exc

        if not rows:
            return []

        index = ChunkBM25Index(
            [Candidate(document_id=r.document_id, ordinal=r.ordinal, text=r.text) for r in rows]
        )
        hits = [
            SearchHit(
                document_id=s.candidate.document_id,
                ordinal=s.candidate.ordinal,
                text=s.candidate.text,
                score=s.score,
            )
            for s in index.search(query, top_k=top_k)
        ]
        logger.info(
            "Chunk search | project=%s candidates=%d hits=%d",
            project_id or "*", len(rows), len(hits),
        )
        return hits
