# =============================================================================
# Unit Tests — Ingestion Worker
# =============================================================================
#
# The worker runs against a real JobQueue (in-memory SQLite, fake clock) and
# hand-written fakes for the fetcher, extractor, embedding client and
# vector-store writer. Covers the end-to-end delivery scenarios:
#   A. two-page document → one embedding, one stored record, completed
#   B. embedding always fails → three attempts with growing delays, dead
#   C. embedding fails twice then succeeds → completed on attempt 3
# =============================================================================

from __future__ import annotations

from unittest.mock import patch

import pytest
from conftest import make_queue

from pdf_ingest.db.models import JobStatus
from pdf_ingest.exceptions import (
    EmbeddingError,
    ExtractionError,
    FetchError,
    LeaseLostError,
    QueueError,
)
from pdf_ingest.services.job_queue import JobPayload
from pdf_ingest.services.vectorstore import EmbeddingRecord, record_id
from pdf_ingest.workers.ingestion import IngestionWorker, JobStage

DOC_REF = "uploads/hello.pdf"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeFetcher:
    def __init__(self, data: bytes = b"%PDF-1.4 fake", error: Exception | None = None) -> None:
        self.data = data
        self.error = error
        self.refs: list[str] = []
        self.closed = False

    def fetch(self, document_ref: str) -> bytes:
        self.refs.append(document_ref)
        if self.error is not None:
            raise self.error
        return self.data

    def close(self) -> None:
        self.closed = True


class FakeExtractor:
    def __init__(self, pages: list[str] | None = None, error: Exception | None = None) -> None:
        self.pages = pages if pages is not None else ["Hello", "World"]
        self.error = error

    def extract(self, data: bytes, filename: str = "document.pdf") -> list[str]:
        if self.error is not None:
            raise self.error
        return list(self.pages)


class FakeEmbedder:
    """Fails the first `failures` calls, then returns fixed vectors."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[list[str]] = []

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if len(self.calls) <= self.failures:
            raise EmbeddingError("embedding service unavailable")
        return [[0.1, 0.2, 0.3] for _ in texts]


class FakeStore:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.records: list[tuple[EmbeddingRecord, str]] = []

    def store(self, record: EmbeddingRecord, collection: str) -> str:
        if self.error is not None:
            raise self.error
        self.records.append((record, collection))
        return record.id


def _worker(queue, *, embedder=None, store=None, fetcher=None, extractor=None, **kwargs):
    return IngestionWorker(
        queue,
        embedder or FakeEmbedder(),
        store or FakeStore(),
        fetcher=fetcher or FakeFetcher(),
        extractor=extractor or FakeExtractor(),
        collection="test-collection",
        **kwargs,
    )


def _drain(worker, clock, max_rounds: int = 10) -> list:
    """Run the worker until the job settles, skipping past backoff delays."""
    results = []
    for _ in range(max_rounds):
        result = worker.run_once()
        if result is None:
            break
        results.append(result)
        job = worker.queue.get(result.job_id)
        if job.status == JobStatus.FAILED_RETRYABLE:
            clock.advance(job.last_retry_delay)
    return results


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    """Queue + worker delivery scenarios."""

    def test_a_two_page_document_completes(self, queue, clock):
        embedder, store, fetcher = FakeEmbedder(), FakeStore(), FakeFetcher()
        worker = _worker(queue, embedder=embedder, store=store, fetcher=fetcher)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF, original_filename="hello.pdf"))

        results = _drain(worker, clock)

        assert len(results) == 1
        assert results[0].succeeded
        assert results[0].page_count == 2
        assert fetcher.refs == [DOC_REF]
        assert embedder.calls == [["Hello World"]]
        assert len(store.records) == 1

        record, collection = store.records[0]
        assert collection == "test-collection"
        assert record.id == record_id(DOC_REF)
        assert record.source_text == "Hello World"
        assert record.metadata["source"] == DOC_REF
        assert record.metadata["job_id"] == job_id

        job = queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 1

    def test_b_embedding_always_fails_ends_dead(self, queue, clock):
        embedder, store = FakeEmbedder(failures=99), FakeStore()
        worker = _worker(queue, embedder=embedder, store=store)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        delays = []
        for _ in range(10):
            result = worker.run_once()
            if result is None:
                break
            assert result.stage == JobStage.EMBEDDING
            job = queue.get(job_id)
            if job.status == JobStatus.FAILED_RETRYABLE:
                delays.append(job.last_retry_delay)
                clock.advance(job.last_retry_delay)

        job = queue.get(job_id)
        assert job.status == JobStatus.DEAD
        assert job.attempt == job.max_attempts == 3
        assert job.last_error_kind == "EmbeddingError"
        assert len(embedder.calls) == 3
        assert delays == sorted(delays) and delays[0] < delays[1]
        assert store.records == []

    def test_c_embedding_recovers_on_third_attempt(self, queue, clock):
        embedder, store = FakeEmbedder(failures=2), FakeStore()
        worker = _worker(queue, embedder=embedder, store=store)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        results = _drain(worker, clock)

        assert [r.succeeded for r in results] == [False, False, True]
        job = queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 3
        assert len(embedder.calls) == 3
        assert len(store.records) == 1


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestErrorHandling:
    """How each failure kind is reported to the queue."""

    def test_blank_pages_go_dead_without_embedding(self, queue, clock):
        embedder = FakeEmbedder()
        worker = _worker(queue, embedder=embedder, extractor=FakeExtractor(pages=[]))
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        result = worker.run_once()

        assert result.stage == JobStage.EXTRACTING
        assert embedder.calls == []
        job = queue.get(job_id)
        assert job.status == JobStatus.DEAD
        assert job.last_error_kind == "EmptyContentError"

    def test_blank_pre_extracted_text_goes_dead(self, queue, clock):
        embedder, fetcher = FakeEmbedder(), FakeFetcher()
        worker = _worker(queue, embedder=embedder, fetcher=fetcher)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF, extracted_text=["  ", "\n"]))

        worker.run_once()

        assert fetcher.refs == []
        assert embedder.calls == []
        assert queue.get(job_id).status == JobStatus.DEAD

    def test_pre_extracted_text_skips_fetch(self, queue, clock):
        embedder, fetcher = FakeEmbedder(), FakeFetcher()
        worker = _worker(queue, embedder=embedder, fetcher=fetcher)
        queue.enqueue(JobPayload(document_ref=DOC_REF, extracted_text=["Page one", "", "Page three"]))

        result = worker.run_once()

        assert result.succeeded
        assert fetcher.refs == []
        assert embedder.calls == [["Page one Page three"]]

    def test_unparseable_pdf_goes_dead(self, queue, clock):
        extractor = FakeExtractor(error=ExtractionError("not a PDF"))
        worker = _worker(queue, extractor=extractor)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        worker.run_once()

        job = queue.get(job_id)
        assert job.status == JobStatus.DEAD
        assert job.attempt == 1

    def test_permanent_errors_consume_attempts_when_configured(self, queue, clock):
        extractor = FakeExtractor(error=ExtractionError("not a PDF"))
        worker = _worker(queue, extractor=extractor, dead_letter_permanent_errors=False)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        results = _drain(worker, clock)

        assert len(results) == 3
        assert queue.get(job_id).status == JobStatus.DEAD

    def test_fetch_failure_is_retried(self, queue, clock):
        fetcher = FakeFetcher(error=FetchError("timed out"))
        worker = _worker(queue, fetcher=fetcher)
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        result = worker.run_once()

        assert result.retryable
        assert queue.get(job_id).status == JobStatus.FAILED_RETRYABLE

    def test_store_failure_is_retried(self, queue, clock):
        worker = _worker(queue, store=FakeStore(error=RuntimeError("disk full")))
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        result = worker.run_once()

        assert result.stage == JobStage.STORING
        assert isinstance(result.error, RuntimeError)
        job = queue.get(job_id)
        assert job.status == JobStatus.FAILED_RETRYABLE
        assert job.last_error_kind == "RuntimeError"

    def test_process_contains_unexpected_errors(self, queue, clock):
        worker = _worker(queue, extractor=FakeExtractor(error=KeyError("surprise")))
        queue.enqueue(JobPayload(document_ref=DOC_REF))
        job = queue.dequeue()

        result = worker.process(job)

        assert not result.succeeded
        assert result.retryable
        # process() alone leaves the job leased
        assert queue.get(job.id).status == JobStatus.IN_PROGRESS

    def test_report_after_lost_lease_is_ignored(self, queue, clock):
        worker = _worker(queue)
        queue.enqueue(JobPayload(document_ref=DOC_REF))
        stale = queue.dequeue()
        clock.advance(61)
        current = queue.dequeue()

        assert worker.report(stale, worker.process(stale)) is None
        assert queue.get(current.id).status == JobStatus.IN_PROGRESS

    def test_run_once_on_empty_queue(self, queue):
        assert _worker(queue).run_once() is None

    def test_close_releases_fetcher(self, queue):
        fetcher = FakeFetcher()
        _worker(queue, fetcher=fetcher).close()
        assert fetcher.closed


# ---------------------------------------------------------------------------
# Chunking strategy
# ---------------------------------------------------------------------------


class TestTokenChunking:
    """chunk_strategy="tokens" stores one record per chunk."""

    def test_one_record_per_chunk(self, queue, clock):
        embedder, store = FakeEmbedder(), FakeStore()
        long_page = "The company reported strong quarterly growth. " * 60
        worker = _worker(
            queue,
            embedder=embedder,
            store=store,
            extractor=FakeExtractor(pages=[long_page, long_page]),
            chunk_strategy="tokens",
            chunk_size=64,
            chunk_overlap=8,
        )
        queue.enqueue(JobPayload(document_ref=DOC_REF))

        result = worker.run_once()

        assert result.succeeded
        assert len(embedder.calls) == 1
        assert len(store.records) == len(embedder.calls[0]) > 1
        ids = [record.id for record, _ in store.records]
        assert ids == [record_id(DOC_REF, i) for i in range(len(ids))]
        assert store.records[0][0].metadata["chunk_count"] == len(ids)

    def test_unknown_strategy_rejected(self, queue):
        with pytest.raises(ValueError):
            _worker(queue, chunk_strategy="sentences")


# ---------------------------------------------------------------------------
# Lease renewal
# ---------------------------------------------------------------------------


class TestLeaseRenewal:
    """A slow but live worker keeps its job past the visibility timeout."""

    def test_slow_job_on_final_attempt_still_completes(self, clock):
        queue = make_queue(clock=clock, visibility_timeout=60.0, max_attempts=1)
        rival_leases = []

        class SlowExtractor(FakeExtractor):
            def extract(self, data, filename="document.pdf"):
                clock.advance(50)
                return super().extract(data, filename)

        class SlowEmbedder(FakeEmbedder):
            def embed_many(self, texts):
                # 100s in: past the first lease, inside the renewed one
                clock.advance(50)
                rival_leases.append(queue.dequeue(owner="w2"))
                return super().embed_many(texts)

        store = FakeStore()
        worker = _worker(queue, embedder=SlowEmbedder(), store=store, extractor=SlowExtractor())
        job_id = queue.enqueue(JobPayload(document_ref=DOC_REF))

        result = worker.run_once()

        assert result.succeeded
        assert rival_leases == [None]
        assert len(store.records) == 1
        job = queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 1
        assert job.last_error is None

    def test_lost_lease_stops_before_embedding(self, queue, clock):
        embedder, store = FakeEmbedder(), FakeStore()
        worker = _worker(queue, embedder=embedder, store=store)
        queue.enqueue(JobPayload(document_ref=DOC_REF))
        stale = queue.dequeue(owner="w1")
        clock.advance(61)
        current = queue.dequeue(owner="w2")

        result = worker.process(stale)

        assert isinstance(result.error, LeaseLostError)
        assert result.stage == JobStage.EXTRACTING
        assert embedder.calls == []
        assert store.records == []
        assert worker.report(stale, result) is None
        assert queue.get(current.id).lease_owner == "w2"

    def test_job_without_lease_token_skips_renewal(self, queue):
        worker = _worker(queue)
        queue.enqueue(JobPayload(document_ref=DOC_REF))
        job = queue.dequeue()
        job.lease_token = None

        with patch.object(queue, "extend_lease") as extend_lease:
            result = worker.process(job)

        assert result.succeeded
        extend_lease.assert_not_called()

    def test_queue_error_during_renewal_propagates(self, queue):
        worker = _worker(queue)
        queue.enqueue(JobPayload(document_ref=DOC_REF))
        job = queue.dequeue()

        with patch.object(queue, "extend_lease", side_effect=QueueError("database gone")):
            with pytest.raises(QueueError):
                worker.process(job)
