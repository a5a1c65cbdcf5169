"""
Document Service — the pipeline's synchronous contract

  submit_document()  validate → store blob → document (PENDING) + job in one
                     transaction → nudge workers
  get_document()     single document with its indexing fields
  request_reindex()  INDEXED | FAILED → PENDING, old chunks dropped, new job
  delete_document()  chunks + job + row in one transaction, then the blob

Extraction, chunking and indexing happen later in the worker pool; their
failures never surface here, only as the document's status.

Invariants enforced here:
  - The blob is removed again if the document row cannot be committed, so
    no blob outlives a failed submit.
  - A document never has more than one job (unique index_jobs.document_id);
    re-index from PENDING / PROCESSING fails with InvalidState.
  - Descriptions keep only allowlisted formatting markup (nh3) when stored.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from uuid import UUID

import nh3
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from docindex.core.errors import (
    DocumentNotFound,
    FileTooLarge,
    InvalidBlobReference,
    StorageUnavailable,
    ValidationFailed,
)
from docindex.db.session import session_scope
from docindex.indexing.base import Indexer
from docindex.models.documents import Document, Pending, utcnow
from docindex.processing.extractor import DOCX_MIME_TYPE, XLSX_MIME_TYPE, normalize_mime_type
from docindex.queue.job_queue import JobQueue
from docindex.schemas.documents import (
    ChunkView,
    DocumentCategory,
    DocumentView,
    SearchHitView,
)
from docindex.services.status import StatusTracker
from docindex.storage.blob import BlobStore

logger = logging.getLogger(__name__)

MAX_FILE_NAME_CHARS   = 255
MAX_DESCRIPTION_CHARS = 5000
MAX_SEARCH_RESULTS    = 100

# ---------------------------------------------------------------------------
# Input sanitation helpers
# ---------------------------------------------------------------------------

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")

# Rich-text allowlist for descriptions; anything else is dropped by nh3
_DESCRIPTION_TAGS = {
    "a", "abbr", "b", "blockquote", "br", "code", "del", "div", "em",
    "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i", "img", "li", "ol", "p",
    "pre", "s", "span", "strong", "sub", "sup", "table", "tbody", "td",
    "th", "thead", "tr", "u", "ul",
}
_DESCRIPTION_ATTRIBUTES = {
    "a":   {"href", "title"},
    "img": {"src", "alt", "title", "width", "height"},
    "ol":  {"start"},
    "td":  {"colspan", "rowspan"},
    "th":  {"colspan", "rowspan"},
}
# Removed together with their content
_DESCRIPTION_DROPPED_TAGS = {"script", "style", "iframe", "object", "embed", "link"}
_DESCRIPTION_URL_SCHEMES = {"http", "https", "mailto"}

_EXTENSION_MIME_OVERRIDES = {
    ".md":   "text/markdown",
    ".csv":  "text/csv",
    ".txt":  "text/plain",
    ".docx": DOCX_MIME_TYPE,
    ".xlsx": XLSX_MIME_TYPE,
}


def sanitize_file_name(file_name: str) -> str:
    """
    Strip directory components and characters that are unsafe in file
    systems or object keys. Unicode letters are kept.
    """
    basename = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_FILENAME_CHARS.sub("_", basename)
    safe = _WHITESPACE.sub(" ", safe).strip().lstrip(".")
    if not safe:
        raise ValidationFailed("file_name", "File name is empty after sanitization")
    if len(safe) > MAX_FILE_NAME_CHARS:
        stem, dot, ext = safe.rpartition(".")
        if dot and len(ext) <= 10:
            safe = stem[: MAX_FILE_NAME_CHARS - len(ext) - 1] + "." + ext
        else:
            safe = safe[:MAX_FILE_NAME_CHARS]
    return safe


def sanitize_description(description: str | None) -> str | None:
    """
    Rich-text description, cleaned with an allowlist: formatting tags are
    kept; script-like elements, event handler / style attributes and
    javascript: URLs are removed. Markup-only input becomes None.
    """
    if description is None:
        return None
    cleaned = nh3.clean(
        description[:MAX_DESCRIPTION_CHARS],
        tags=_DESCRIPTION_TAGS,
        clean_content_tags=_DESCRIPTION_DROPPED_TAGS,
        attributes=_DESCRIPTION_ATTRIBUTES,
        url_schemes=_DESCRIPTION_URL_SCHEMES,
        strip_comments=True,
    ).strip()
    if not nh3.clean(cleaned, tags=set()).strip():
        return None
    return cleaned


def resolve_mime_type(mime_type: str | None, file_name: str) -> str:
    """
    Normalized MIME type; the file extension decides when the caller sent
    nothing useful.
    """
    normalized = normalize_mime_type(mime_type or "")
    if normalized and normalized != "application/octet-stream":
        return normalized
    ext = ("." + file_name.rsplit(".", 1)[-1].lower()) if "." in file_name else ""
    if ext in _EXTENSION_MIME_OVERRIDES:
        return _EXTENSION_MIME_OVERRIDES[ext]
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or "application/octet-stream"


# ---------------------------------------------------------------------------
# Task publisher — nudges workers after a job is enqueued
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    No-op publisher: worker pools poll the queue on their own. Subclasses
    push a wake-up to a message broker.
    """

    def publish_work_available(self, document_id: UUID) -> None:
        return None


class CeleryTaskPublisher(TaskPublisher):
    """
    Sends process_next_job to the Celery broker. Import is deferred so the
    broker is not needed at module load time.
    """

    def publish_work_available(self, document_id: UUID) -> None:
        from docindex.workers.tasks import process_next_job

        process_next_job.apply_async(kwargs={"document_id": str(document_id)})
        logger.info("Work-available published | doc=%s", document_id)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentService:
    """
    Stateless facade; safe to share between threads. All collaborators are
    injected.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        queue: JobQueue,
        tracker: StatusTracker,
        indexer: Indexer,
        *,
        max_file_size_bytes: int,
        publisher: TaskPublisher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blobs = blob_store
        self._queue = queue
        self._tracker = tracker
        self._indexer = indexer
        self._max_file_size = max_file_size_bytes
        self._publisher = publisher or TaskPublisher()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit_document(
        self,
        project_id: str,
        uploader_id: str,
        file_name: str,
        data: bytes,
        mime_type: str | None,
        category: DocumentCategory | str,
        description: str | None = None,
    ) -> DocumentView:
        if not project_id or not uploader_id:
            raise ValidationFailed("project_id", "project_id and uploader_id are required")
        if not data:
            raise ValidationFailed("file", "File is empty")
        if len(data) > self._max_file_size:
            raise FileTooLarge(len(data), self._max_file_size)
        try:
            category = DocumentCategory(category)
        except ValueError:
            raise ValidationFailed("category", f"Unknown category: {category!r}") from None

        safe_name = sanitize_file_name(file_name)
        resolved_mime = resolve_mime_type(mime_type, safe_name)
        clean_description = sanitize_description(description)
        document_id = uuid.uuid4()

        logger.info(
            "Submit start | doc=%s project=%s uploader=%s file=%s size=%d mime=%s",
            document_id, project_id, uploader_id, safe_name, len(data), resolved_mime,
        )

        blob_ref = self._blobs.store(data, resolved_mime)

        now = utcnow()
        document = Document(
            id=document_id,
            project_id=project_id,
            uploaded_by=uploader_id,
            file_name=safe_name,
            blob_ref=blob_ref,
            file_size=len(data),
            mime_type=resolved_mime,
            category=category,
            description=clean_description,
            created_at=now,
            updated_at=now,
        )
        document.apply_state(Pending())

        try:
            with session_scope(self._session_factory) as session:
                session.add(document)
                session.flush()
                self._queue.enqueue(session, document_id)
        except Exception:
            logger.exception("Submit failed, removing blob | doc=%s ref=%s", document_id, blob_ref)
            self._discard_blob(blob_ref)
            raise

        self._notify(document_id)
        logger.info("Submit ok | doc=%s status=PENDING", document_id)
        return DocumentView.model_validate(document)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_document(self, document_id: UUID) -> DocumentView:
        with session_scope(self._session_factory) as session:
            document = session.get(Document, document_id)
            if document is None:
                raise DocumentNotFound(document_id)
            return DocumentView.model_validate(document)

    def get_chunks(self, document_id: UUID) -> list[ChunkView]:
        self.get_document(document_id)
        return [ChunkView.model_validate(c) for c in self._indexer.get_chunks(document_id)]

    def search_chunks(
        self,
        query: str,
        *,
        project_id: str | None = None,
        top_k: int = 10,
    ) -> list[SearchHitView]:
        if not query or not query.strip():
            raise ValidationFailed("query", "Search query is empty")
        if not 1 <= top_k <= MAX_SEARCH_RESULTS:
            raise ValidationFailed("top_k", f"top_k must be between 1 and {MAX_SEARCH_RESULTS}")
        return [
            SearchHitView(
                document_id=hit.document_id,
                ordinal=hit.ordinal,
                text=hit.text,
                score=hit.score,
            )
            for hit in self._indexer.search(query, project_id=project_id, top_k=top_k)
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def request_reindex(self, document_id: UUID) -> DocumentView:
        with session_scope(self._session_factory) as session:
            document = self._load_for_update(session, document_id)
            self._tracker.reset_for_reindex(session, document)
            self._indexer.delete_chunks(document_id, session=session)
            self._queue.enqueue(session, document_id)
            session.refresh(document)
            view = DocumentView.model_validate(document)

        self._notify(document_id)
        return view

    def delete_document(self, document_id: UUID) -> None:
        with session_scope(self._session_factory) as session:
            document = self._load_for_update(session, document_id)
            blob_ref = document.blob_ref
            status = document.index_status
            chunks = self._indexer.delete_chunks(document_id, session=session)
            jobs = self._queue.remove_for_document(session, document_id)
            session.execute(delete(Document).where(Document.id == document_id))

        logger.info(
            "Document deleted | doc=%s status=%s chunks=%d jobs=%d",
            document_id, status.value, chunks, jobs,
        )
        self._discard_blob(blob_ref)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_for_update(session: Session, document_id: UUID) -> Document:
        stmt = select(Document).where(Document.id == document_id)
        if session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update()
        document = session.scalar(stmt)
        if document is None:
            raise DocumentNotFound(document_id)
        return document

    def _discard_blob(self, blob_ref: str) -> None:
        try:
            self._blobs.delete(blob_ref)
        except (StorageUnavailable, InvalidBlobReference) as exc:
            # Orphaned or unreachable blob; the document row is already gone
            logger.error("Blob delete failed | ref=%s error=%s", blob_ref, exc)

    def _notify(self, document_id: UUID) -> None:
        try:
            self._publisher.publish_work_available(document_id)
        except Exception as exc:
            # Non-fatal: the job row is committed and workers poll the queue
            logger.error("Failed to publish work-available | doc=%s error=%s", document_id, exc)
