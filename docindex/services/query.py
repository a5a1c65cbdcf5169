"""
Query / Filter layer — read-only views over documents.

  list_documents(filters, page, page_size) → DocumentPage
      Conjunction of the filters, newest first (created_at DESC, id DESC),
      1-based pages of at most MAX_PAGE_SIZE rows plus the unpaged total.

  stats(project_id=None) → DocumentStats
      Total plus per-category and per-status counts; every enum member is
      present (zero-filled) so each breakdown sums to the total.

Upload-date buckets are UTC calendar ranges computed from an injectable clock.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.orm import sessionmaker

from docindex.core.errors import ValidationFailed
from docindex.db.session import session_scope
from docindex.models.documents import Document, utcnow
from docindex.queue.job_queue import Clock
from docindex.schemas.documents import (
    FILE_TYPE_EXTENSIONS,
    FILE_TYPE_MIME_TYPES,
    MAX_PAGE_SIZE,
    DocumentCategory,
    DocumentFilters,
    DocumentPage,
    DocumentStats,
    DocumentView,
    FileType,
    IndexStatus,
    UploadDateBucket,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Date buckets
# ---------------------------------------------------------------------------

def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month(month_start: datetime) -> datetime:
    if month_start.month == 12:
        return month_start.replace(year=month_start.year + 1, month=1)
    return month_start.replace(month=month_start.month + 1)


def bucket_range(bucket: UploadDateBucket, now: datetime) -> tuple[datetime, datetime]:
    """
    Half-open [start, end) UTC range for a bucket. Weeks start on Monday.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if bucket is UploadDateBucket.TODAY:
        return midnight, midnight + timedelta(days=1)
    if bucket is UploadDateBucket.THIS_WEEK:
        week_start = midnight - timedelta(days=midnight.weekday())
        return week_start, week_start + timedelta(days=7)
    if bucket is UploadDateBucket.THIS_MONTH:
        start = _month_start(now)
        return start, _next_month(start)
    if bucket is UploadDateBucket.LAST_MONTH:
        end = _month_start(now)
        start = (end - timedelta(days=1)).replace(day=1)
        return start, end
    if bucket is UploadDateBucket.THIS_YEAR:
        start = _month_start(now).replace(month=1)
        return start, start.replace(year=start.year + 1)
    raise ValueError(f"Unknown upload date bucket: {bucket!r}")


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _file_type_clause(file_type: FileType):
    mime = func.lower(Document.mime_type)
    name = func.lower(Document.file_name)
    return or_(
        mime.in_(FILE_TYPE_MIME_TYPES[file_type]),
        *[name.like(f"%{ext}") for ext in FILE_TYPE_EXTENSIONS[file_type]],
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class QueryService:

    def __init__(self, session_factory: sessionmaker, *, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _conditions(self, filters: DocumentFilters) -> list:
        conditions = []
        if filters.status is not None:
            conditions.append(Document.index_status == filters.status)
        if filters.category is not None:
            conditions.append(Document.category == filters.category)
        if filters.project_ids:
            conditions.append(Document.project_id.in_(filters.project_ids))
        if filters.uploader_ids:
            conditions.append(Document.uploaded_by.in_(filters.uploader_ids))
        if filters.file_type is not None:
            conditions.append(_file_type_clause(filters.file_type))
        if filters.created_from is not None:
            conditions.append(Document.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(Document.created_at < filters.created_to)
        if filters.upload_date is not None:
            start, end = bucket_range(filters.upload_date, self._clock())
            conditions.append(Document.created_at >= start)
            conditions.append(Document.created_at < end)
        if filters.search:
            pattern = f"%{_escape_like(filters.search)}%"
            conditions.append(
                or_(
                    Document.file_name.ilike(pattern, escape="\\"),
                    Document.description.ilike(pattern, escape="\\"),
                )
            )
        return conditions

    def list_documents(
        self,
        filters: DocumentFilters | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> DocumentPage:
        if page < 1:
            raise ValidationFailed("page", "page must be >= 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationFailed("page_size", f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        conditions = self._conditions(filters or DocumentFilters())
        with session_scope(self._session_factory) as session:
            total = session.scalar(
                select(func.count()).select_from(Document).where(*conditions)
            )
            rows = session.scalars(
                select(Document)
                .where(*conditions)
                .order_by(Document.created_at.desc(), Document.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            documents = [DocumentView.model_validate(doc) for doc in rows]

        logger.debug("List documents | page=%d size=%d total=%d", page, page_size, total)
        return DocumentPage(documents=documents, total_count=total, page=page, page_size=page_size)

    def stats(self, project_id: str | None = None) -> DocumentStats:
        scope = [Document.project_id == project_id] if project_id is not None else []
        by_category = {c: 0 for c in DocumentCategory}
        by_status = {s: 0 for s in IndexStatus}

        with session_scope(self._session_factory) as session:
            for category, count in session.execute(
                select(Document.category, func.count()).where(*scope).group_by(Document.category)
            ):
                by_category[category] = count
            for status, count in session.execute(
                select(Document.index_status, func.count()).where(*scope).group_by(Document.index_status)
            ):
                by_status[status] = count

        return DocumentStats(
            total_count=sum(by_category.values()),
            counts_by_category=by_category,
            counts_by_status=by_status,
        )
