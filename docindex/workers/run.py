"""
Standalone worker entry point.

Usage:
    docindex-worker                   # run the pool until SIGINT / SIGTERM
    docindex-worker --concurrency 8
    docindex-worker --once            # process one job and exit
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from docindex.core.config import get_settings
from docindex.core.logging import configure_logging
from docindex.db.session import get_engine, init_db
from docindex.services.container import build_components
from docindex.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docindex-worker", description="Run the document indexing workers")
    parser.add_argument("--concurrency", type=int, default=None, help="worker threads (default: settings)")
    parser.add_argument("--once", action="store_true", help="process one job and exit")
    parser.add_argument("--init-db", action="store_true", help="create missing tables before starting")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.debug)

    if args.init_db:
        init_db(get_engine())

    components = build_components(settings)

    if args.once:
        worker = components.make_worker("docindex-once")
        try:
            result = worker.run_once()
        finally:
            worker.close()
        if result is None:
            logger.info("No jobs available")
        else:
            logger.info("Processed one job | doc=%s outcome=%s", result.document_id, result.outcome.value)
        return 0

    pool = WorkerPool(components.make_worker, args.concurrency or settings.worker_concurrency)

    def handle_signal(signum, _frame):
        logger.info("Received signal %s, shutting down...", signum)
        pool.stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    pool.start()
    # Main thread only waits; signal handlers run here
    while not pool.stop_event.wait(1.0):
        pass
    pool.stop(timeout=settings.lease_seconds)
    return 0


if __name__ == "__main__":
    sys.exit(main())
