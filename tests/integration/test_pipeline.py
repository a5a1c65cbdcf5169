"""
Integration Tests — submit → worker → indexed / failed
═══════════════════════════════════════════════════════
These tests run the real components end to end against the per-test SQLite
database and blob directory:

  ✅ Real: DocumentService, JobQueue, StatusTracker, ExtractorRegistry,
           Chunker, SqlIndexer, PipelineWorker, LocalBlobStore
  🔲 Mock: TaskPublisher (mock_publisher fixture)

Scenarios:
  - 2100-char text → 3 chunks → INDEXED
  - Unsupported MIME type → FAILED on the first attempt, never retried
  - Blank text → INDEXED with zero chunks
  - DOCX and XLSX uploads extracted end to end
  - Transient failures retry up to max_attempts, then FAILED
  - Expired leases count as attempts
  - A worker that lost its lease cannot overwrite the new owner's result
  - A hung extractor times out without starving later jobs
  - Re-index replaces the chunk set; only allowed from INDEXED / FAILED,
    and concurrent requests leave exactly one job
  - Delete removes document, chunks, job and blob
"""

from __future__ import annotations

import threading
import uuid

import pytest
from sqlalchemy import select

from docindex.core.errors import (
    DocumentNotFound,
    FileTooLarge,
    InvalidState,
    StorageUnavailable,
    ValidationFailed,
)
from docindex.db.session import session_scope
from docindex.models.documents import Document, IndexJob
from docindex.processing.chunking import TextChunk
from docindex.processing.extractor import XLSX_MIME_TYPE
from docindex.schemas.documents import DocumentCategory, IndexStatus
from docindex.workers.pipeline import Outcome

FLAKY_MIME = "application/x-flaky"
HANG_MIME  = "application/x-hang"


def _words(n_chars: int) -> bytes:
    return ("word " * (n_chars // 5)).encode()


@pytest.fixture
def flaky_extractor(components):
    """
    Registers an extractor for FLAKY_MIME that fails `failures` times with a
    non-pipeline exception, then returns `text`.
    """
    state = {"calls": 0}

    def _install(failures: int, text: str = "recovered text after retry"):
        def _extract(_data: bytes) -> str:
            state["calls"] += 1
            if state["calls"] <= failures:
                raise ConnectionResetError("upstream converter dropped the connection")
            return text

        components.registry.register(FLAKY_MIME, _extract)
        return state

    return _install


@pytest.fixture
def hanging_extractor(components):
    """Registers HANG_MIME; its extractor blocks until the test finishes."""
    release = threading.Event()

    def _extract(_data: bytes) -> str:
        release.wait(60)
        return ""

    components.registry.register(HANG_MIME, _extract)
    yield release
    release.set()


def _race(n: int, fn) -> list:
    """Run fn on n threads released together; returns results or raised exceptions."""
    barrier = threading.Barrier(n)
    outcomes: list = []
    lock = threading.Lock()

    def _call():
        barrier.wait()
        try:
            outcome = fn()
        except Exception as exc:
            outcome = exc
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_call) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def _job_rows(session_factory, document_id) -> list[tuple]:
    with session_scope(session_factory) as session:
        return session.execute(
            select(IndexJob.id, IndexJob.attempt, IndexJob.lease_token)
            .where(IndexJob.document_id == document_id)
        ).all()


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestIndexing:

    def test_submit_starts_pending(self, submit, components, mock_publisher):
        doc = submit()

        assert doc.index_status is IndexStatus.PENDING
        assert doc.chunk_count is None and doc.indexed_at is None and doc.error_message is None
        assert components.queue.get_job(doc.id).attempt == 1
        mock_publisher.publish_work_available.assert_called_once_with(doc.id)

    def test_2100_chars_indexed_as_three_chunks(self, submit, worker, components):
        doc = submit(_words(2100), file_name="long.txt")

        result = worker.run_once(wait_seconds=0)

        assert result.outcome is Outcome.INDEXED
        assert result.chunk_count == 3
        view = components.documents.get_document(doc.id)
        assert view.index_status is IndexStatus.INDEXED
        assert view.chunk_count == 3
        assert view.indexed_at is not None
        assert view.error_message is None

        chunks = components.documents.get_chunks(doc.id)
        assert [c.ordinal for c in chunks] == [0, 1, 2]
        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 1000), (900, 1900), (1800, 2100)]
        assert components.queue.get_job(doc.id) is None

    def test_blank_text_indexed_with_zero_chunks(self, submit, worker, components):
        doc = submit(b"   \n\n  \t\n")

        result = worker.run_once(wait_seconds=0)

        assert result.outcome is Outcome.INDEXED
        view = components.documents.get_document(doc.id)
        assert view.index_status is IndexStatus.INDEXED
        assert view.chunk_count == 0
        assert components.documents.get_chunks(doc.id) == []

    def test_docx_end_to_end(self, submit, worker, components):
        import io

        import docx

        document = docx.Document()
        document.add_paragraph("Field campaign summary")
        buf = io.BytesIO()
        document.save(buf)

        doc = submit(buf.getvalue(), file_name="summary.docx", mime_type="application/octet-stream")
        worker.run_once(wait_seconds=0)

        chunks = components.documents.get_chunks(doc.id)
        assert [c.text for c in chunks] == ["Field campaign summary"]

    def test_xlsx_end_to_end(self, submit, worker, components):
        import io

        from openpyxl import Workbook

        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Samples"
        sheet.append(["Site", "Depth"])
        sheet.append(["Borehole A", 12])
        buf = io.BytesIO()
        workbook.save(buf)

        doc = submit(buf.getvalue(), file_name="samples.xlsx", mime_type=None)
        result = worker.run_once(wait_seconds=0)

        assert doc.mime_type == XLSX_MIME_TYPE
        assert result.outcome is Outcome.INDEXED
        chunks = components.documents.get_chunks(doc.id)
        assert [c.text for c in chunks] == ["Samples\nSite\tDepth\nBorehole A\t12"]

    def test_no_work_returns_none(self, worker):
        assert worker.run_once(wait_seconds=0) is None


# ─────────────────────────────────────────────────────────────────────────────
# Failures and retries
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestFailures:

    def test_unsupported_type_fails_without_retry(self, submit, worker, components):
        doc = submit(b"MZ\x90\x00binary", file_name="tool.exe", mime_type="application/x-msdownload")

        result = worker.run_once(wait_seconds=0)

        assert result.outcome is Outcome.FAILED
        view = components.documents.get_document(doc.id)
        assert view.index_status is IndexStatus.FAILED
        assert view.error_message == "Unsupported file type: application/x-msdownload"
        assert view.chunk_count is None
        assert components.queue.get_job(doc.id) is None
        assert worker.run_once(wait_seconds=0) is None

    def test_corrupt_docx_fails_permanently(self, submit, worker, components):
        doc = submit(b"not a zip", file_name="broken.docx", mime_type=None)

        result = worker.run_once(wait_seconds=0)

        assert result.outcome is Outcome.FAILED
        assert components.documents.get_document(doc.id).error_message.startswith("Corrupt document")

    def test_transient_error_then_success(self, submit, worker, components, flaky_extractor):
        state = flaky_extractor(failures=1)
        doc = submit(file_name="data.bin", mime_type=FLAKY_MIME)

        first = worker.run_once(wait_seconds=0)
        assert first.outcome is Outcome.RETRY
        assert components.documents.get_document(doc.id).index_status is IndexStatus.PENDING
        assert components.queue.get_job(doc.id).attempt == 2

        second = worker.run_once(wait_seconds=0)
        assert second.outcome is Outcome.INDEXED
        assert second.attempt == 2
        assert components.documents.get_document(doc.id).chunk_count == 1
        assert state["calls"] == 2

    def test_gives_up_after_max_attempts(self, submit, worker, components, flaky_extractor):
        state = flaky_extractor(failures=10)
        doc = submit(file_name="data.bin", mime_type=FLAKY_MIME)

        outcomes = [worker.run_once(wait_seconds=0).outcome for _ in range(3)]

        assert outcomes == [Outcome.RETRY, Outcome.RETRY, Outcome.FAILED]
        assert worker.run_once(wait_seconds=0) is None
        assert state["calls"] == 3

        view = components.documents.get_document(doc.id)
        assert view.index_status is IndexStatus.FAILED
        assert view.error_message == (
            "Text extraction failed (ConnectionResetError) (gave up after 3 attempts)"
        )

    def test_missing_blob_is_transient(self, submit, worker, components, blob_store):
        doc = submit()
        blob_store.delete(doc.blob_ref)

        result = worker.run_once(wait_seconds=0)

        assert result.outcome is Outcome.RETRY
        assert components.queue.get_job(doc.id).last_error == "Blob storage unavailable"

    def test_malformed_blob_ref_fails_without_retry(self, submit, worker, components, session_factory):
        doc = submit()
        with session_scope(session_factory) as session:
            session.get(Document, doc.id).blob_ref = "../escape.txt"

        result = worker.run_once(wait_seconds=0)

        assert result.outcome is Outcome.FAILED
        assert result.attempt == 1
        assert components.documents.get_document(doc.id).error_message == "Stored file reference is invalid"
        assert components.queue.get_job(doc.id) is None

        components.documents.delete_document(doc.id)
        with pytest.raises(DocumentNotFound):
            components.documents.get_document(doc.id)

    def test_expired_leases_count_as_attempts(self, submit, worker, components):
        doc = submit()
        for expected_attempt in (1, 2, 3):
            # Lease that expires immediately, as if its worker died
            lease = components.queue.lease("crashed", 0, on_lease=components.tracker.mark_processing)
            assert lease.attempt == expected_attempt

        result = worker.run_once(wait_seconds=0)

        assert result.attempt == 4
        assert result.outcome is Outcome.FAILED
        assert components.documents.get_document(doc.id).error_message == (
            "Processing did not complete (gave up after 3 attempts)"
        )

    def test_hung_extractors_do_not_starve_later_jobs(
        self, submit, components, settings, hanging_extractor,
    ):
        components.settings = settings.model_copy(update={"extract_timeout_seconds": 0.2})
        timed_worker = components.make_worker("timeout-worker")
        try:
            hung = [submit(file_name=f"hung{i}.bin", mime_type=HANG_MIME) for i in range(3)]
            for _ in hung:
                result = timed_worker.run_once(wait_seconds=0)
                assert result.outcome is Outcome.RETRY
                assert result.error.startswith("Extract timed out")
            for doc in hung:
                components.documents.delete_document(doc.id)

            healthy = submit(file_name="healthy.txt")
            result = timed_worker.run_once(wait_seconds=0)

            assert result.document_id == healthy.id
            assert result.outcome is Outcome.INDEXED
            assert components.documents.get_document(healthy.id).index_status is IndexStatus.INDEXED
        finally:
            hanging_extractor.set()
            timed_worker.close()


# ─────────────────────────────────────────────────────────────────────────────
# Lease ownership
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestLeaseOwnership:

    def test_stale_worker_result_discarded(self, submit, worker, components):
        doc = submit(_words(2100))
        stale = components.queue.lease("slow-worker", 0, on_lease=components.tracker.mark_processing)

        # Another worker reclaims the expired lease and finishes the job
        fresh = worker.run_once(wait_seconds=0)
        assert fresh.outcome is Outcome.INDEXED
        assert fresh.attempt == 2

        # The original holder finishes late
        late = worker.process(stale)

        assert late.outcome is Outcome.DISCARDED
        view = components.documents.get_document(doc.id)
        assert view.index_status is IndexStatus.INDEXED
        assert view.chunk_count == 3
        assert components.indexer.count_chunks(doc.id) == 3

    def test_document_deleted_mid_processing(self, submit, worker, components):
        doc = submit()
        lease = components.queue.lease("worker-x", 300, on_lease=components.tracker.mark_processing)

        components.documents.delete_document(doc.id)
        result = worker.process(lease)

        assert result.outcome is Outcome.DISCARDED
        assert components.indexer.count_chunks(doc.id) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Re-index / delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReindexAndDelete:

    def test_reindex_replaces_chunk_set(self, submit, worker, components, mock_publisher):
        doc = submit(_words(2100))
        worker.run_once(wait_seconds=0)

        view = components.documents.request_reindex(doc.id)
        assert view.index_status is IndexStatus.PENDING
        assert view.chunk_count is None
        assert components.indexer.count_chunks(doc.id) == 0
        assert mock_publisher.publish_work_available.call_count == 2

        worker.run_once(wait_seconds=0)

        assert components.documents.get_document(doc.id).chunk_count == 3
        assert [c.ordinal for c in components.documents.get_chunks(doc.id)] == [0, 1, 2]

    def test_reindex_failed_document(self, submit, worker, components):
        doc = submit(b"data", file_name="x.exe", mime_type="application/x-msdownload")
        worker.run_once(wait_seconds=0)

        view = components.documents.request_reindex(doc.id)

        assert view.index_status is IndexStatus.PENDING
        assert view.error_message is None

    def test_reindex_pending_rejected(self, submit, components):
        doc = submit()

        with pytest.raises(InvalidState):
            components.documents.request_reindex(doc.id)

    def test_reindex_processing_rejected(self, submit, components):
        doc = submit()
        components.queue.lease("worker-x", 300, on_lease=components.tracker.mark_processing)

        with pytest.raises(InvalidState) as exc_info:
            components.documents.request_reindex(doc.id)

        assert exc_info.value.current_status == "PROCESSING"
        assert components.documents.get_document(doc.id).index_status is IndexStatus.PROCESSING

    @pytest.mark.concurrency
    def test_concurrent_reindex_of_indexed_document(self, submit, worker, components, session_factory):
        doc = submit()
        worker.run_once(wait_seconds=0)

        outcomes = _race(8, lambda: components.documents.request_reindex(doc.id))

        accepted = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, Exception)]
        assert len(outcomes) == 8
        assert len(accepted) == 1
        assert accepted[0].index_status is IndexStatus.PENDING
        assert all(isinstance(exc, InvalidState) for exc in rejected)
        assert len(_job_rows(session_factory, doc.id)) == 1

        # The single job is leased once; nothing else is queued behind it
        assert worker.run_once(wait_seconds=0).outcome is Outcome.INDEXED
        assert worker.run_once(wait_seconds=0) is None

    @pytest.mark.concurrency
    def test_concurrent_reindex_while_processing(self, submit, components, session_factory):
        doc = submit()
        components.queue.lease("worker-x", 300, on_lease=components.tracker.mark_processing)
        before = _job_rows(session_factory, doc.id)

        outcomes = _race(8, lambda: components.documents.request_reindex(doc.id))

        assert len(outcomes) == 8
        assert all(isinstance(o, InvalidState) for o in outcomes)
        assert _job_rows(session_factory, doc.id) == before
        assert components.documents.get_document(doc.id).index_status is IndexStatus.PROCESSING

    def test_reindex_unknown_document(self, components):
        with pytest.raises(DocumentNotFound):
            components.documents.request_reindex(uuid.uuid4())

    def test_delete_failed_document(self, submit, worker, components, blob_store):
        doc = submit(b"data", file_name="x.exe", mime_type="application/x-msdownload")
        worker.run_once(wait_seconds=0)

        components.documents.delete_document(doc.id)

        with pytest.raises(DocumentNotFound):
            components.documents.get_document(doc.id)
        assert components.indexer.count_chunks(doc.id) == 0
        with pytest.raises(StorageUnavailable):
            blob_store.fetch(doc.blob_ref)

    def test_delete_pending_document_removes_job(self, submit, worker, components):
        doc = submit()

        components.documents.delete_document(doc.id)

        assert components.queue.get_job(doc.id) is None
        assert worker.run_once(wait_seconds=0) is None

    def test_delete_unknown_document(self, components):
        with pytest.raises(DocumentNotFound):
            components.documents.delete_document(uuid.uuid4())

    def test_replace_chunks_is_a_swap(self, submit, components):
        doc = submit()
        indexer = components.indexer

        indexer.replace_chunks(doc.id, [TextChunk(i, f"old {i}", i, i + 1) for i in range(4)])
        indexer.replace_chunks(doc.id, [TextChunk(0, "new", 0, 3)])

        assert [c.text for c in indexer.get_chunks(doc.id)] == ["new"]


# ─────────────────────────────────────────────────────────────────────────────
# Intake validation
# ─────────────────────────────────────────────────────────────────────────────

def _blob_files(settings) -> list:
    from pathlib import Path

    return [p for p in Path(settings.blob_root).iterdir() if p.is_file()]


@pytest.mark.integration
class TestIntake:

    def test_oversized_file_rejected_before_storage(self, submit, settings):
        with pytest.raises(FileTooLarge):
            submit(b"x" * (settings.max_file_size_bytes + 1))

        assert _blob_files(settings) == []

    def test_empty_file_rejected(self, submit):
        with pytest.raises(ValidationFailed):
            submit(b"")

    def test_unknown_category_rejected(self, submit):
        with pytest.raises(ValidationFailed):
            submit(category="POSTER")

    def test_blob_removed_when_row_cannot_be_committed(self, submit, components, settings, monkeypatch):
        def broken_enqueue(*args, **kwargs):
            raise RuntimeError("queue table missing")

        monkeypatch.setattr(components.queue, "enqueue", broken_enqueue)

        with pytest.raises(RuntimeError):
            submit()

        assert _blob_files(settings) == []
        assert components.queries.stats().total_count == 0

    def test_publisher_failure_is_not_fatal(self, submit, mock_publisher, components):
        mock_publisher.publish_work_available.side_effect = ConnectionError("broker down")

        doc = submit()

        assert components.documents.get_document(doc.id).index_status is IndexStatus.PENDING

    def test_description_and_name_sanitized(self, submit):
        doc = submit(
            file_name="../secret/plan.txt",
            description="<b>Phase 1</b><script>steal()</script>",
            category=DocumentCategory.GUIDELINE,
        )

        assert doc.file_name == "plan.txt"
        assert doc.description == "<b>Phase 1</b>"
        assert doc.category is DocumentCategory.GUIDELINE


# ─────────────────────────────────────────────────────────────────────────────
# Search over indexed chunks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestSearch:

    def test_only_indexed_documents_in_scope(self, submit, worker, components):
        soil = submit(b"Soil moisture readings from the north plot.", project_id="p-a")
        budget = submit(b"Budget spreadsheet notes.", project_id="p-b")
        worker.run_once(wait_seconds=0)
        worker.run_once(wait_seconds=0)
        pending = submit(b"More soil moisture data.", project_id="p-a")

        hits = components.documents.search_chunks("soil moisture")

        assert [h.document_id for h in hits] == [soil.id]
        assert pending.id not in {h.document_id for h in hits}
        assert components.documents.search_chunks("budget", project_id="p-a") == []
        assert components.documents.search_chunks("budget", project_id="p-b")[0].document_id == budget.id

    @pytest.mark.parametrize("query,top_k", [("", 10), ("   ", 10), ("soil", 0), ("soil", 101)])
    def test_invalid_search(self, components, query, top_k):
        with pytest.raises(ValidationFailed):
            components.documents.search_chunks(query, top_k=top_k)
