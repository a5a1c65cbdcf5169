"""
Pipeline exception taxonomy.

  Permanent  — retrying cannot help (unsupported type, corrupt file,
               a blob reference that can never resolve).
               The document goes straight to FAILED.
  Transient  — storage / index outages, stage timeouts, extractor crashes.
               The job is re-enqueued until the attempt budget runs out.
  Invariant  — a bug or a lost race (ordinal gap, stale lease commit).
               Logged as an internal error, never written to error_message.

Every error carries `public_message`: the only text that may be stored on the
document or returned to an untrusted caller.
"""

from __future__ import annotations

from uuid import UUID


class DocIndexError(Exception):
    """Base class for all pipeline errors."""

    public_message = "Document processing error"

    def __init__(self, message: str | None = None, *, public: bool = True) -> None:
        super().__init__(message or self.public_message)
        if message and public:
            self.public_message = message


# ---------------------------------------------------------------------------
# Permanent
# ---------------------------------------------------------------------------

class PermanentError(DocIndexError):
    """Failure that will not go away on retry."""


class UnsupportedMimeType(PermanentError):
    def __init__(self, mime_type: str) -> None:
        self.mime_type = mime_type
        super().__init__(f"Unsupported file type: {mime_type}")


class CorruptDocument(PermanentError):
    """The extractor positively identified the file as unreadable."""

    def __init__(self, detail: str = "file is corrupt or unreadable") -> None:
        super().__init__(f"Corrupt document: {detail}")


class InvalidBlobReference(PermanentError):
    """The stored blob reference can never resolve (bad shape or wrong prefix)."""

    public_message = "Stored file reference is invalid"

    def __init__(self, blob_ref: str) -> None:
        self.blob_ref = blob_ref
        super().__init__(f"invalid blob reference: {blob_ref!r}", public=False)


# ---------------------------------------------------------------------------
# Transient
# ---------------------------------------------------------------------------

class TransientError(DocIndexError):
    """Failure that may succeed on a later attempt."""


class ExtractionFailed(TransientError):
    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        # Exception class only; the message may contain paths or internals
        super().__init__(f"Text extraction failed ({type(cause).__name__})")


class StorageUnavailable(TransientError):
    public_message = "Blob storage unavailable"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail, public=False)


class IndexUnavailable(TransientError):
    public_message = "Search index unavailable"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail, public=False)


class StageTimeout(TransientError):
    def __init__(self, stage: str, seconds: float) -> None:
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"{stage.capitalize()} timed out after {seconds:g}s")


# ---------------------------------------------------------------------------
# Caller-facing contract errors
# ---------------------------------------------------------------------------

class DocumentNotFound(DocIndexError):
    def __init__(self, document_id: UUID) -> None:
        self.document_id = document_id
        super().__init__(f"Document '{document_id}' was not found")


class InvalidState(DocIndexError):
    def __init__(self, document_id: UUID, current_status: str, action: str) -> None:
        self.document_id = document_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} document '{document_id}' while it is {current_status}"
        )


class ValidationFailed(DocIndexError):
    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class FileTooLarge(ValidationFailed):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            "file",
            f"File is {size_bytes:,} bytes; the limit is {limit_bytes:,} bytes",
        )


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

class InvariantViolation(DocIndexError):
    public_message = "Internal processing error"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail, public=False)


class LeaseLost(DocIndexError):
    """A compare-and-set commit lost to another worker or a concurrent delete."""

    public_message = "Internal processing error"

    def __init__(self, document_id: UUID, detail: str) -> None:
        self.document_id = document_id
        self.detail = detail
        super().__init__(f"document={document_id}: {detail}", public=False)
