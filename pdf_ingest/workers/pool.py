# =============================================================================
# Worker Pool — Bounded Concurrent Job Processing
# =============================================================================
#
# The pool driver is a single loop that leases jobs and hands them to a
# ThreadPoolExecutor, keeping at most `concurrency` jobs in flight:
#
#   ┌──────────────┐ dequeue ┌────────────┐ submit ┌────────────────────┐
#   │ ingestion_   │────────▶│ pool loop  │───────▶│ executor threads   │
#   │ jobs table   │◀────────│ (1 thread) │        │ worker.handle(job) │
#   └──────────────┘ ack/fail└────────────┘        └────────────────────┘
#
# Jobs share nothing but the queue. Within a job the steps stay sequential;
# only network calls block, and they block just their own thread.
#
# SHUTDOWN:
# stop() (or the stop_event) ends leasing; in-flight jobs finish and report
# before run() returns. There is no per-job cancellation.
#
# HEARTBEAT:
# With heartbeat_interval set, the loop extends the lease of every unfinished
# job on that cadence, so a job that outlives the visibility timeout is not
# redelivered while its worker thread is still running it.
#
# FATAL ERRORS:
# A QueueError from dequeue/ack/fail means job state can no longer be
# persisted. The loop stops leasing, waits for in-flight jobs, and re-raises
# so the process exits and supervision restarts it.
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import timedelta

from pdf_ingest.exceptions import QueueError
from pdf_ingest.services.job_queue import IngestionJob
from pdf_ingest.workers.ingestion import IngestionWorker, JobResult

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs an IngestionWorker over the queue with bounded concurrency."""

    def __init__(
        self,
        worker: IngestionWorker,
        *,
        concurrency: int = 100,
        poll_interval: float = 1.0,
        retention: timedelta | None = None,
        purge_interval: float = 3600.0,
        heartbeat_interval: float | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if heartbeat_interval is not None and heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be > 0")
        self._worker = worker
        self._queue = worker.queue
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._retention = retention
        self._purge_interval = purge_interval
        self._heartbeat_interval = heartbeat_interval
        self._next_heartbeat = 0.0
        self._stop_event = threading.Event()
        self._in_flight: dict[Future[JobResult], IngestionJob] = {}
        self._processed = 0

    @property
    def processed(self) -> int:
        """Jobs handled (acked or failed) since the pool was created."""
        return self._processed

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stop(self) -> None:
        """Stop leasing new jobs; run() returns once in-flight jobs finish."""
        self._stop_event.set()

    def run(self, *, until_idle: bool = False) -> int:
        """
        Lease and process jobs until stop() is called.

        Args:
            until_idle: return as soon as the queue has nothing available
                and no job is in flight (used for batch runs and tests).

        Returns:
            Number of jobs handled during this call.

        Raises:
            QueueError: the queue's backing store failed.
        """
        handled_before = self._processed
        self._next_heartbeat = time.monotonic() + (self._heartbeat_interval or 0.0)
        next_purge = time.monotonic()
        fatal: QueueError | None = None

        logger.info(
            "Worker pool started: worker_id=%s, concurrency=%d",
            self._worker.worker_id, self._concurrency,
        )

        with ThreadPoolExecutor(
            max_workers=self._concurrency,
            thread_name_prefix="ingest",
        ) as executor:
            try:
                while not self._stop_event.is_set():
                    self._collect(block=False)
                    self._heartbeat()

                    if self._retention is not None and time.monotonic() >= next_purge:
                        self._queue.purge(self._retention)
                        next_purge = time.monotonic() + self._purge_interval

                    if len(self._in_flight) >= self._concurrency:
                        self._collect(block=True)
                        continue

                    job = self._queue.dequeue(owner=self._worker.worker_id)
                    if job is None:
                        if until_idle and not self._in_flight:
                            break
                        if self._in_flight:
                            self._collect(block=True)
                        else:
                            self._stop_event.wait(self._poll_interval)
                        continue

                    self._in_flight[executor.submit(self._worker.handle, job)] = job
            except QueueError as exc:
                fatal = exc
                logger.critical("Queue backing store failed, stopping pool: %s", exc)
            finally:
                while self._in_flight:
                    try:
                        self._collect(block=True)
                        self._heartbeat()
                    except QueueError as exc:
                        fatal = fatal or exc

        logger.info(
            "Worker pool stopped: worker_id=%s, handled=%d",
            self._worker.worker_id, self._processed - handled_before,
        )
        if fatal is not None:
            raise fatal
        return self._processed - handled_before

    def _collect(self, *, block: bool) -> None:
        """Retire finished futures, re-raising the first QueueError."""
        if not self._in_flight:
            return
        if block:
            done, _ = wait(self._in_flight, timeout=self._poll_interval, return_when=FIRST_COMPLETED)
        else:
            done = {f for f in self._in_flight if f.done()}

        fatal: QueueError | None = None
        for future in done:
            self._in_flight.pop(future, None)
            self._processed += 1
            exc = future.exception()
            if isinstance(exc, QueueError):
                fatal = fatal or exc
            elif exc is not None:
                # handle() never raises anything else; log and keep going
                logger.error("Worker thread raised unexpectedly: %r", exc)
        if fatal is not None:
            raise fatal

    def _heartbeat(self) -> None:
        """Extend the lease of every job still running, once per interval."""
        if self._heartbeat_interval is None or time.monotonic() < self._next_heartbeat:
            return
        self._next_heartbeat = time.monotonic() + self._heartbeat_interval
        for future, job in list(self._in_flight.items()):
            if future.done() or job.lease_token is None:
                continue
            self._queue.extend_lease(job.id, job.lease_token)
