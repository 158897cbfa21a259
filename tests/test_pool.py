# =============================================================================
# Unit Tests — Worker Pool
# =============================================================================
#
# The pool leases on one thread and acks/fails from executor threads, so
# these tests use a file-backed SQLite database (one connection per thread)
# rather than the shared in-memory one.
# =============================================================================

from __future__ import annotations

import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import FakeClock, make_queue
from test_ingestion_worker import FakeEmbedder, FakeExtractor, FakeStore, _worker

from pdf_ingest.db.models import JobStatus
from pdf_ingest.exceptions import QueueError
from pdf_ingest.services.job_queue import JobPayload, JobQueue
from pdf_ingest.workers.pool import WorkerPool


@pytest.fixture
def file_queue(tmp_path) -> JobQueue:
    return make_queue(f"sqlite:///{tmp_path / 'pool.db'}", clock=FakeClock())


def _enqueue(queue: JobQueue, count: int) -> list[str]:
    return [
        queue.enqueue(JobPayload(
            document_ref=f"uploads/{i}.pdf",
            extracted_text=[f"Document {i} text"],
        ))
        for i in range(count)
    ]


class TestWorkerPool:
    """Tests for WorkerPool.run()."""

    def test_processes_all_jobs_until_idle(self, file_queue):
        store = FakeStore()
        job_ids = _enqueue(file_queue, 12)
        pool = WorkerPool(_worker(file_queue, store=store), concurrency=4, poll_interval=0.05)

        handled = pool.run(until_idle=True)

        assert handled == 12
        assert pool.processed == 12
        assert pool.in_flight == 0
        assert len(store.records) == 12
        assert all(file_queue.get(job_id).status == JobStatus.COMPLETED for job_id in job_ids)

    def test_failed_jobs_are_reported(self, file_queue):
        job_ids = _enqueue(file_queue, 3)
        worker = _worker(file_queue, embedder=FakeEmbedder(failures=99))
        pool = WorkerPool(worker, concurrency=2, poll_interval=0.05)

        # Retries are scheduled in the future; the fake clock never moves
        assert pool.run(until_idle=True) == 3
        statuses = {file_queue.get(job_id).status for job_id in job_ids}
        assert statuses == {JobStatus.FAILED_RETRYABLE}

    def test_idle_queue_returns_immediately(self, file_queue):
        pool = WorkerPool(_worker(file_queue), concurrency=2, poll_interval=0.05)
        assert pool.run(until_idle=True) == 0

    def test_stop_before_run_leases_nothing(self, file_queue):
        job_ids = _enqueue(file_queue, 2)
        pool = WorkerPool(_worker(file_queue), concurrency=2)
        pool.stop()

        assert pool.run() == 0
        assert all(file_queue.get(job_id).status == JobStatus.PENDING for job_id in job_ids)

    def test_concurrency_must_be_positive(self, file_queue):
        with pytest.raises(ValueError):
            WorkerPool(_worker(file_queue), concurrency=0)

    def test_heartbeat_interval_must_be_positive(self, file_queue):
        with pytest.raises(ValueError):
            WorkerPool(_worker(file_queue), heartbeat_interval=0)


class TestWorkerPoolHeartbeat:
    """Leases of running jobs are extended while the worker thread is busy."""

    def test_heartbeat_keeps_long_job_leased(self, tmp_path):
        clock = FakeClock()
        queue = make_queue(
            f"sqlite:///{tmp_path / 'heartbeat.db'}",
            clock=clock,
            visibility_timeout=60.0,
            max_attempts=1,
        )
        started, release = threading.Event(), threading.Event()

        class BlockingExtractor(FakeExtractor):
            def extract(self, data, filename="document.pdf"):
                started.set()
                release.wait(5)
                return super().extract(data, filename)

        job_id = queue.enqueue(JobPayload(document_ref="uploads/slow.pdf"))
        pool = WorkerPool(
            _worker(queue, extractor=BlockingExtractor()),
            concurrency=1,
            poll_interval=0.01,
            heartbeat_interval=0.01,
        )
        runner = threading.Thread(target=pool.run, kwargs={"until_idle": True})
        runner.start()
        try:
            assert started.wait(5)
            clock.advance(50)
            renewed_until = clock.now + timedelta(seconds=60)

            deadline = time.monotonic() + 5
            while queue.get(job_id).lease_expires_at != renewed_until:
                assert time.monotonic() < deadline, "lease was never extended"
                time.sleep(0.01)

            # Past the first lease; a second worker must not take or reap it
            clock.advance(50)
            assert queue.dequeue(owner="w2") is None
        finally:
            release.set()
            runner.join(5)

        job = queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 1

    def test_no_heartbeat_by_default(self, file_queue):
        _enqueue(file_queue, 1)
        pool = WorkerPool(_worker(file_queue), concurrency=1, poll_interval=0.05)

        with patch.object(file_queue, "extend_lease", wraps=file_queue.extend_lease) as extend:
            pool.run(until_idle=True)

        # Only the worker's own renewals between stages
        assert extend.call_count == 2


class TestWorkerPoolFatalErrors:
    """QueueError stops the pool and propagates."""

    def test_dequeue_failure_propagates(self, tmp_path):
        class BrokenQueue(JobQueue):
            def dequeue(self, owner=None):
                raise QueueError("database unreachable")

        base = make_queue(f"sqlite:///{tmp_path / 'broken.db'}")
        queue = BrokenQueue(base._session_factory, clock=FakeClock())
        pool = WorkerPool(_worker(queue), concurrency=2, poll_interval=0.05)

        with pytest.raises(QueueError, match="unreachable"):
            pool.run()

    def test_ack_failure_propagates_after_draining(self, tmp_path):
        class AckFailsQueue(JobQueue):
            def ack(self, job_id, lease_token=None):
                raise QueueError("commit failed")

        base = make_queue(f"sqlite:///{tmp_path / 'ackfail.db'}")
        queue = AckFailsQueue(base._session_factory, clock=FakeClock())
        _enqueue(queue, 3)
        pool = WorkerPool(_worker(queue), concurrency=3, poll_interval=0.05)

        with pytest.raises(QueueError, match="commit failed"):
            pool.run(until_idle=True)
        assert pool.in_flight == 0
