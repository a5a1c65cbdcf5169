"""
Document Pipeline — Pydantic Schemas

Covers:
  - Enumerations shared with the ORM (index status, category, file type)
  - Read-side filters for the list / stats queries
  - Response views returned to the rest of the application
  - Structured error bodies used by the HTTP surface

Design decisions:
  - Status values are surfaced verbatim: PENDING | PROCESSING | INDEXED | FAILED.
  - error_message is a plain human-readable string; never a stack trace.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Index pipeline state machine
# ---------------------------------------------------------------------------

class IndexStatus(str, Enum):
    """
    Maps to documents.index_status.
    Transitions: PENDING → PROCESSING → INDEXED | FAILED
                 PROCESSING → PENDING            (transient failure, retry)
                 INDEXED | FAILED → PENDING      (explicit re-index)
    """
    PENDING    = "PENDING"      # job queued, no worker holds it yet
    PROCESSING = "PROCESSING"   # a worker leased the job (or its lease expired)
    INDEXED    = "INDEXED"      # chunks written, chunk_count / indexed_at set
    FAILED     = "FAILED"       # permanent failure, error_message set


TERMINAL_STATUSES: frozenset[IndexStatus] = frozenset({IndexStatus.INDEXED, IndexStatus.FAILED})


class DocumentCategory(str, Enum):
    PROJECT   = "PROJECT"
    REFERENCE = "REFERENCE"
    TEMPLATE  = "TEMPLATE"
    GUIDELINE = "GUIDELINE"
    SYSTEM    = "SYSTEM"


class FileType(str, Enum):
    """Coarse file families used by the list filter."""
    PDF     = "pdf"
    DOC     = "doc"
    XLS     = "xls"
    PPT     = "ppt"
    IMAGE   = "image"
    ARCHIVE = "archive"
    TEXT    = "text"


FILE_TYPE_MIME_TYPES: dict[FileType, tuple[str, ...]] = {
    FileType.PDF:     ("application/pdf",),
    FileType.DOC:     (
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ),
    FileType.XLS:     (
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ),
    FileType.PPT:     (
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ),
    FileType.IMAGE:   ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"),
    FileType.ARCHIVE: (
        "application/zip",
        "application/x-rar-compressed",
        "application/x-7z-compressed",
    ),
    FileType.TEXT:    ("text/plain", "text/markdown", "text/csv"),
}

# Extension fallback for uploads that arrived as application/octet-stream
FILE_TYPE_EXTENSIONS: dict[FileType, tuple[str, ...]] = {
    FileType.PDF:     (".pdf",),
    FileType.DOC:     (".doc", ".docx"),
    FileType.XLS:     (".xls", ".xlsx"),
    FileType.PPT:     (".ppt", ".pptx"),
    FileType.IMAGE:   (".jpg", ".jpeg", ".png", ".gif", ".webp"),
    FileType.ARCHIVE: (".zip", ".rar", ".7z"),
    FileType.TEXT:    (".txt", ".md", ".csv"),
}


class UploadDateBucket(str, Enum):
    TODAY      = "today"
    THIS_WEEK  = "this_week"
    THIS_MONTH = "this_month"
    THIS_YEAR  = "this_year"
    LAST_MONTH = "last_month"


# ---------------------------------------------------------------------------
# Read-side filters
# ---------------------------------------------------------------------------

MAX_PAGE_SIZE = 100


class DocumentFilters(BaseModel):
    """
    Conjunction of optional predicates. Empty lists / None mean "no filter".
    `created_from` is inclusive, `created_to` is exclusive.
    """
    status:       IndexStatus | None      = None
    category:     DocumentCategory | None = None
    project_ids:  list[str]               = Field(default_factory=list)
    uploader_ids: list[str]               = Field(default_factory=list)
    file_type:    FileType | None         = None
    created_from: datetime | None         = None
    created_to:   datetime | None         = None
    upload_date:  UploadDateBucket | None = None
    search:       str | None              = Field(None, max_length=200)

    @model_validator(mode="after")
    def _check_range(self) -> "DocumentFilters":
        # Naive bounds are taken as UTC
        if self.created_from and self.created_from.tzinfo is None:
            self.created_from = self.created_from.replace(tzinfo=timezone.utc)
        if self.created_to and self.created_to.tzinfo is None:
            self.created_to = self.created_to.replace(tzinfo=timezone.utc)
        if self.created_from and self.created_to and self.created_from >= self.created_to:
            raise ValueError("created_from must be earlier than created_to")
        if self.search is not None:
            self.search = self.search.strip() or None
        return self


# ---------------------------------------------------------------------------
# Response views
# ---------------------------------------------------------------------------

class DocumentView(BaseModel):
    """A document with its indexing fields, as returned by get/list."""
    model_config = ConfigDict(from_attributes=True)

    id:            UUID
    project_id:    str
    uploaded_by:   str
    file_name:     str
    blob_ref:      str
    file_size:     int
    mime_type:     str
    category:      DocumentCategory
    description:   str | None = None
    index_status:  IndexStatus
    indexed_at:    datetime | None = None
    chunk_count:   int | None = None
    error_message: str | None = None
    created_at:    datetime
    updated_at:    datetime


class DocumentPage(BaseModel):
    documents:   list[DocumentView]
    total_count: int
    page:        int
    page_size:   int


class DocumentStats(BaseModel):
    total_count:        int
    counts_by_category: dict[DocumentCategory, int]
    counts_by_status:   dict[IndexStatus, int]


class ChunkView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id:  UUID
    ordinal:      int
    text:         str
    start_offset: int
    end_offset:   int
    created_at:   datetime


class SearchHitView(BaseModel):
    document_id: UUID
    ordinal:     int
    text:        str
    score:       float


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str


class ErrorResponse(BaseModel):
    """Uniform error envelope for all 4xx/5xx responses."""
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class PipelineErrors:
    """Factories for every documented error case."""

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
        )

    @staticmethod
    def invalid_state(message: str, current_status: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_STATE",
            message=message,
            details=[
                ErrorDetail(
                    field="index_status",
                    message=f"Re-index is only allowed from INDEXED or FAILED (current: {current_status}).",
                    code="INVALID_STATE",
                )
            ],
        )

    @staticmethod
    def validation_failed(field: str, message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message=message,
            details=[ErrorDetail(field=field, message=message, code="VALIDATION_ERROR")],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def storage_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
