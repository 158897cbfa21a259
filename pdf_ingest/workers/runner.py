# =============================================================================
# Worker Process Entry Point
# =============================================================================
#
#   python -m pdf_ingest.workers
#
# Builds the queue and the production collaborators from settings, installs
# SIGINT/SIGTERM handlers for graceful shutdown, and runs the pool until
# stopped. Leases are renewed every third of the visibility timeout. A QueueError escapes main() on purpose: the process exits
# non-zero and the supervisor (systemd, Kubernetes, docker restart policy)
# starts a fresh one.
# =============================================================================

from __future__ import annotations

import logging
import signal
from datetime import timedelta

from pdf_ingest.config import settings
from pdf_ingest.services.job_queue import build_queue
from pdf_ingest.workers.ingestion import build_worker
from pdf_ingest.workers.pool import WorkerPool

logger = logging.getLogger("pdf_ingest.workers")


def configure_logging(level: str = "INFO") -> None:
    """Initialize log format and level for the worker process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # The OpenAI SDK and httpx log every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> int:
    configure_logging(settings.log_level)

    queue = build_queue(settings)
    worker = build_worker(queue, settings)
    pool = WorkerPool(
        worker,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.worker_poll_interval_seconds,
        retention=timedelta(hours=settings.queue_retention_hours),
        heartbeat_interval=settings.queue_visibility_timeout_seconds / 3,
    )

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %d, finishing in-flight jobs...", signum)
        pool.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        pool.run()
    finally:
        worker.close()
    return 0
