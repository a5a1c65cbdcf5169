"""
SQLAlchemy ORM Models — Documents, Chunks & Index Jobs

Documents, their chunks and the durable job queue live in one database so a
status transition and the matching queue mutation commit atomically.

Indexing fields (index_status, indexed_at, chunk_count, error_message) are
only ever written through IndexState values:

    Pending()                         → all three detail columns NULL
    Processing()                      → all three detail columns NULL
    Indexed(indexed_at, chunk_count)  → error_message NULL
    Failed(error_message)             → indexed_at / chunk_count NULL

The documents_index_state_check constraint enforces the same shape at the
database level, so a row can never be INDEXED without chunk_count or FAILED
without error_message.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docindex.schemas.documents import DocumentCategory, IndexStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetimes on every backend.

    SQLite has no timezone support, so values are stored as naive UTC and
    re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum_column(enum_cls, name: str) -> SAEnum:
    # Stored as VARCHAR + CHECK so SQLite and PostgreSQL share one schema
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )


# ---------------------------------------------------------------------------
# Indexing state — tagged union keyed by status
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Pending:
    status = IndexStatus.PENDING


@dataclass(frozen=True)
class Processing:
    status = IndexStatus.PROCESSING


@dataclass(frozen=True)
class Indexed:
    indexed_at: datetime
    chunk_count: int

    status = IndexStatus.INDEXED

    def __post_init__(self) -> None:
        if self.chunk_count < 0:
            raise ValueError("chunk_count must be >= 0")


@dataclass(frozen=True)
class Failed:
    error_message: str

    status = IndexStatus.FAILED

    def __post_init__(self) -> None:
        if not self.error_message:
            raise ValueError("error_message must be non-empty")


IndexState = Union[Pending, Processing, Indexed, Failed]


def state_columns(state: IndexState) -> dict:
    """Column values for one IndexState, suitable for ORM assignment or UPDATE .values()."""
    return {
        "index_status":  state.status,
        "indexed_at":    state.indexed_at if isinstance(state, Indexed) else None,
        "chunk_count":   state.chunk_count if isinstance(state, Indexed) else None,
        "error_message": state.error_message if isinstance(state, Failed) else None,
    }


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file plus its indexing state.

    project_id / uploaded_by are opaque identifiers owned by the surrounding
    application; they are stored but never dereferenced here.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint("file_size > 0", name="documents_file_size_check"),
        CheckConstraint(
            "(index_status IN ('PENDING', 'PROCESSING')"
            " AND indexed_at IS NULL AND chunk_count IS NULL AND error_message IS NULL)"
            " OR (index_status = 'INDEXED'"
            " AND indexed_at IS NOT NULL AND chunk_count IS NOT NULL AND chunk_count >= 0"
            " AND error_message IS NULL)"
            " OR (index_status = 'FAILED'"
            " AND error_message IS NOT NULL AND indexed_at IS NULL AND chunk_count IS NULL)",
            name="documents_index_state_check",
        ),
        Index("idx_documents_project_created", "project_id", "created_at"),
        Index("idx_documents_status", "index_status"),
        Index("idx_documents_uploader", "uploaded_by"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    project_id:  Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)

    file_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Sanitized original file name",
    )
    blob_ref: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Opaque reference returned by the blob store",
    )
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[DocumentCategory] = mapped_column(
        _enum_column(DocumentCategory, "document_category"),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Indexing state, written through apply_state() only
    index_status: Mapped[IndexStatus] = mapped_column(
        _enum_column(IndexStatus, "index_status"),
        nullable=False,
        default=IndexStatus.PENDING,
    )
    indexed_at:    Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    chunk_count:   Mapped[Optional[int]]      = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]]      = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def index_state(self) -> IndexState:
        if self.index_status == IndexStatus.INDEXED:
            return Indexed(indexed_at=self.indexed_at, chunk_count=self.chunk_count)
        if self.index_status == IndexStatus.FAILED:
            return Failed(error_message=self.error_message)
        if self.index_status == IndexStatus.PROCESSING:
            return Processing()
        return Pending()

    def apply_state(self, state: IndexState) -> None:
        for column, value in state_columns(state).items():
            setattr(self, column, value)

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} project={self.project_id} "
            f"status={self.index_status} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk — document_chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """One contiguous text span of a document; ordinals are 0..n-1 per document."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "ordinal", name="uq_document_chunks_position"),
        CheckConstraint("ordinal >= 0", name="document_chunks_ordinal_check"),
        CheckConstraint("end_offset >= start_offset", name="document_chunks_span_check"),
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    ordinal:      Mapped[int] = mapped_column(Integer, nullable=False)
    text:         Mapped[str] = mapped_column(Text, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset:   Mapped[int] = mapped_column(Integer, nullable=False)
    created_at:   Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# IndexJob — index_jobs (durable queue)
# ---------------------------------------------------------------------------

class IndexJob(Base):
    """
    Unit of work for the pipeline. At most one row per document.

    A job is available when available_at <= now and it is either unleased
    (lease_token NULL) or its visibility_deadline has passed.
    """

    __tablename__ = "index_jobs"
    __table_args__ = (
        UniqueConstraint("document_id", name="uq_index_jobs_document"),
        CheckConstraint("attempt >= 1", name="index_jobs_attempt_check"),
        Index("idx_index_jobs_available", "available_at", "enqueued_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="1-based number of the dequeue that will (or did) process this job",
    )
    enqueued_at:  Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    lease_token:         Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    leased_by:           Mapped[Optional[str]]       = mapped_column(String(128), nullable=True)
    visibility_deadline: Mapped[Optional[datetime]]  = mapped_column(UTCDateTime, nullable=True)
    last_error:          Mapped[Optional[str]]       = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<IndexJob doc={self.document_id} attempt={self.attempt} "
            f"leased_by={self.leased_by}>"
        )
