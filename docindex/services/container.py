"""
Composition root: builds every pipeline component from Settings.

The API process, the standalone worker and the Celery tasks all wire
themselves through build_components(), so they share one definition of
which queue, index and blob store belong together.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from docindex.core.config import Settings
from docindex.db.session import get_session_factory
from docindex.indexing.base import Indexer
from docindex.indexing.sql_index import SqlIndexer
from docindex.processing.chunking import Chunker
from docindex.processing.extractor import ExtractorRegistry, default_registry
from docindex.queue.job_queue import JobQueue
from docindex.services.ingestion import CeleryTaskPublisher, DocumentService, TaskPublisher
from docindex.services.query import QueryService
from docindex.services.status import StatusTracker
from docindex.storage.blob import BlobStore, get_blob_store
from docindex.workers.pipeline import PipelineWorker


@dataclass
class Components:
    settings:        Settings
    session_factory: sessionmaker
    blob_store:      BlobStore
    registry:        ExtractorRegistry
    chunker:         Chunker
    indexer:         Indexer
    queue:           JobQueue
    tracker:         StatusTracker
    documents:       DocumentService
    queries:         QueryService

    def make_worker(self, worker_id: str, stop_event: threading.Event | None = None) -> PipelineWorker:
        return PipelineWorker.from_settings(
            worker_id,
            self.settings,
            session_factory=self.session_factory,
            queue=self.queue,
            tracker=self.tracker,
            blob_store=self.blob_store,
            registry=self.registry,
            chunker=self.chunker,
            indexer=self.indexer,
            stop_event=stop_event,
        )


def build_components(
    settings: Settings,
    *,
    session_factory: sessionmaker | None = None,
    blob_store: BlobStore | None = None,
    publisher: TaskPublisher | None = None,
) -> Components:
    session_factory = session_factory or get_session_factory()
    blob_store = blob_store or get_blob_store(settings)
    if publisher is None:
        publisher = CeleryTaskPublisher() if settings.dispatch_backend == "celery" else TaskPublisher()

    registry = default_registry()
    chunker = Chunker(
        settings.chunk_max_chars,
        settings.chunk_overlap_chars,
        settings.chunk_boundary_radius,
    )
    indexer = SqlIndexer(session_factory)
    queue = JobQueue(session_factory, poll_interval=settings.dequeue_poll_interval)
    tracker = StatusTracker(session_factory, queue)

    documents = DocumentService(
        session_factory,
        blob_store,
        queue,
        tracker,
        indexer,
        max_file_size_bytes=settings.max_file_size_bytes,
        publisher=publisher,
    )
    return Components(
        settings=settings,
        session_factory=session_factory,
        blob_store=blob_store,
        registry=registry,
        chunker=chunker,
        indexer=indexer,
        queue=queue,
        tracker=tracker,
        documents=documents,
        queries=QueryService(session_factory),
    )
