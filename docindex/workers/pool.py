"""
Worker Pool — a fixed set of threads, each running its own PipelineWorker.

Shutdown is cooperative: stop() sets a shared Event, which also cuts short
any blocking dequeue wait. A job that is mid-pipeline finishes (or hits its
stage timeout) before the thread exits.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from docindex.workers.pipeline import PipelineWorker

logger = logging.getLogger(__name__)

# Loop-level error backoff (DB outage etc.), doubling per consecutive error
ERROR_BACKOFF_INITIAL = 1.0
ERROR_BACKOFF_MAX     = 30.0

WorkerFactory = Callable[[str, threading.Event], PipelineWorker]


class WorkerPool:

    def __init__(
        self,
        worker_factory: WorkerFactory,
        concurrency: int,
        *,
        name_prefix: str = "docindex-worker",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._factory = worker_factory
        self._concurrency = concurrency
        self._name_prefix = name_prefix
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.processed = 0

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("WorkerPool already started")
        for i in range(self._concurrency):
            name = f"{self._name_prefix}-{i}"
            thread = threading.Thread(target=self._run, args=(name,), name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool started | concurrency=%d", self._concurrency)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        self.join(timeout)
        logger.info("Worker pool stopped | processed=%d", self.processed)

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Thread body
    # ------------------------------------------------------------------

    def _run(self, worker_id: str) -> None:
        worker = self._factory(worker_id, self._stop)
        backoff = ERROR_BACKOFF_INITIAL
        logger.info("Worker started | worker=%s", worker_id)
        try:
            while not self._stop.is_set():
                try:
                    result = worker.run_once()
                except Exception:
                    logger.exception("Worker loop error | worker=%s backoff_s=%.1f", worker_id, backoff)
                    self._stop.wait(backoff)
                    backoff = min(backoff * 2, ERROR_BACKOFF_MAX)
                    continue
                backoff = ERROR_BACKOFF_INITIAL
                if result is not None:
                    with self._lock:
                        self.processed += 1
        finally:
            worker.close()
            logger.info("Worker exited | worker=%s", worker_id)
