"""
Blob Store Adapter

Persists raw uploaded bytes and hands back an opaque reference. The rest of
the pipeline only ever sees the reference; the backing store is chosen by
configuration (local filesystem for development and tests, S3 in production).

Contract:
  store(data, mime_type) -> blob_ref
  fetch(blob_ref)        -> bytes      (missing ref → StorageUnavailable)
  delete(blob_ref)       -> None       (missing ref is a no-op)

Every I/O failure surfaces as StorageUnavailable, which the worker treats as
transient. A reference of the wrong shape raises InvalidBlobReference
(permanent): no retry can make it resolve.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from docindex.core.config import Settings
from docindex.core.errors import InvalidBlobReference, StorageUnavailable

logger = logging.getLogger(__name__)

# <32 hex chars><optional extension>
_REF_PATTERN = re.compile(r"^[0-9a-f]{32}(\.[A-Za-z0-9]{1,10})?$")


def extension_for(mime_type: str) -> str:
    """Best-effort file extension for a MIME type ('' when unknown)."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return mimetypes.guess_extension(base) or ""


def new_blob_name(mime_type: str) -> str:
    return f"{uuid.uuid4().hex}{extension_for(mime_type)}"


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class BlobStore(ABC):

    @abstractmethod
    def store(self, data: bytes, mime_type: str) -> str:
        ...

    @abstractmethod
    def fetch(self, blob_ref: str) -> bytes:
        ...

    @abstractmethod
    def delete(self, blob_ref: str) -> None:
        ...


# ---------------------------------------------------------------------------
# Local filesystem store
# ---------------------------------------------------------------------------

class LocalBlobStore(BlobStore):
    """
    Stores each blob as one file directly under `root`.

    Writes go to a temporary name first and are renamed into place, so a
    crashed write never leaves a truncated blob behind a valid reference.
    """

    def __init__(self, root: str | os.PathLike) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, blob_ref: str) -> Path:
        if not _REF_PATTERN.match(blob_ref):
            raise InvalidBlobReference(blob_ref)
        return self._root / blob_ref

    def store(self, data: bytes, mime_type: str) -> str:
        blob_ref = new_blob_name(mime_type)
        target = self._root / blob_ref
        tmp = target.with_name(target.name + ".part")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            logger.error("Blob write failed | ref=%s error=%s", blob_ref, exc)
            raise StorageUnavailable(str(exc)) from exc

        logger.info("Blob stored | ref=%s size=%d", blob_ref, len(data))
        return blob_ref

    def fetch(self, blob_ref: str) -> bytes:
        path = self._path(blob_ref)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise StorageUnavailable(f"blob not found: {blob_ref}") from exc
        except OSError as exc:
            logger.error("Blob read failed | ref=%s error=%s", blob_ref, exc)
            raise StorageUnavailable(str(exc)) from exc

    def delete(self, blob_ref: str) -> None:
        path = self._path(blob_ref)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Blob delete failed | ref=%s error=%s", blob_ref, exc)
            raise StorageUnavailable(str(exc)) from exc
        logger.info("Blob deleted | ref=%s", blob_ref)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_backend == "s3":
        from docindex.storage.s3 import S3BlobStore

        return S3BlobStore(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region_name=settings.aws_region,
        )
    if settings.blob_backend == "local":
        return LocalBlobStore(settings.blob_root)
    raise ValueError(f"Unknown blob_backend: {settings.blob_backend!r}")
