"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped, each test gets a fresh database):
  settings         : Settings pointing at a SQLite file and a blob dir under tmp_path
  engine           : schema created with init_db()
  session_factory  : sessionmaker bound to that engine
  blob_store       : LocalBlobStore under tmp_path
  components       : build_components() wired with the above + a mock publisher
  worker           : one PipelineWorker from the components
  client           : FastAPI TestClient over create_app(settings, components)

Environment strategy:
  - No external services: SQLite file database, local blob directory,
    Celery pointed at the in-memory broker and never contacted.
  - Retry backoff is zero so retried jobs are immediately available again.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # pipeline + API tests
  pytest -m concurrency           # worker pool tests
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("APP_ENV",               "test")
os.environ.setdefault("DEBUG",                 "false")
os.environ.setdefault("DATABASE_URL",          "sqlite:///./docindex-test.db")
os.environ.setdefault("BLOB_BACKEND",          "local")
os.environ.setdefault("DISPATCH_BACKEND",      "none")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from docindex.core.config import Settings  # noqa: E402
from docindex.db.session import create_db_engine, init_db, make_session_factory, session_scope  # noqa: E402
from docindex.models.documents import Document, Failed, Indexed, Pending, Processing, utcnow  # noqa: E402
from docindex.schemas.documents import DocumentCategory, IndexStatus  # noqa: E402
from docindex.services.container import build_components  # noqa: E402
from docindex.services.ingestion import TaskPublisher  # noqa: E402
from docindex.storage.blob import LocalBlobStore  # noqa: E402


# A Wednesday; week bucket runs Mon 2024-05-13 .. Mon 2024-05-20
FIXED_NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)


class MutableClock:
    """Injectable clock that tests move forward explicitly."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ─────────────────────────────────────────────────────────────────────────────
# Settings / database
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'docindex.db'}",
        blob_backend="local",
        blob_root=str(tmp_path / "blobs"),
        max_attempts=3,
        retry_initial_backoff=0.0,
        retry_jitter_percent=0.0,
        dequeue_wait_seconds=0.0,
        dequeue_poll_interval=0.01,
        worker_concurrency=2,
        max_file_size_bytes=64 * 1024,
        dispatch_backend="none",
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


# ─────────────────────────────────────────────────────────────────────────────
# Composed pipeline
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher — records nudges without touching Celery."""
    return MagicMock(spec=TaskPublisher)


@pytest.fixture
def components(settings, session_factory, blob_store, mock_publisher):
    return build_components(
        settings,
        session_factory=session_factory,
        blob_store=blob_store,
        publisher=mock_publisher,
    )


@pytest.fixture
def worker(components):
    worker = components.make_worker("test-worker")
    yield worker
    worker.close()


@pytest.fixture
def submit(components):
    """
    Factory: submit a document through DocumentService.

    Usage:
        doc = submit()                                   # small text file
        doc = submit(b"...", mime_type="application/pdf")
    """
    def _submit(
        data:        bytes = b"Plain text body for indexing.\n",
        file_name:   str   = "notes.txt",
        mime_type:   str | None = "text/plain",
        category:    DocumentCategory = DocumentCategory.PROJECT,
        project_id:  str   = "proj-1",
        uploader_id: str   = "user-1",
        description: str | None = None,
    ):
        return components.documents.submit_document(
            project_id, uploader_id, file_name, data, mime_type, category, description,
        )
    return _submit


# ─────────────────────────────────────────────────────────────────────────────
# Direct row insertion (query / queue tests)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_document(session_factory):
    """
    Factory: insert a Document row directly, bypassing intake.
    Returns the new document id.
    """
    def _make(
        *,
        project_id:  str = "proj-1",
        uploaded_by: str = "user-1",
        file_name:   str = "report.pdf",
        mime_type:   str = "application/pdf",
        category:    DocumentCategory = DocumentCategory.PROJECT,
        status:      IndexStatus = IndexStatus.PENDING,
        description: str | None = None,
        created_at:  datetime | None = None,
    ) -> uuid.UUID:
        created_at = created_at or FIXED_NOW
        document = Document(
            id=uuid.uuid4(),
            project_id=project_id,
            uploaded_by=uploaded_by,
            file_name=file_name,
            blob_ref=f"{uuid.uuid4().hex}.bin",
            file_size=128,
            mime_type=mime_type,
            category=category,
            description=description,
            created_at=created_at,
            updated_at=created_at,
        )
        if status is IndexStatus.INDEXED:
            document.apply_state(Indexed(indexed_at=utcnow(), chunk_count=0))
        elif status is IndexStatus.FAILED:
            document.apply_state(Failed(error_message="Corrupt document: test"))
        elif status is IndexStatus.PROCESSING:
            document.apply_state(Processing())
        else:
            document.apply_state(Pending())
        with session_scope(session_factory) as session:
            session.add(document)
        return document.id
    return _make


@pytest.fixture
def load_document(session_factory):
    """Factory: fresh Document row by id (None when deleted)."""
    def _load(document_id: uuid.UUID) -> Document | None:
        with session_scope(session_factory) as session:
            return session.get(Document, document_id)
    return _load


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def client(settings, components):
    """TestClient over an app that uses the test components (lifespan skips wiring)."""
    from fastapi.testclient import TestClient

    from docindex.main import create_app

    app = create_app(settings, components)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW
