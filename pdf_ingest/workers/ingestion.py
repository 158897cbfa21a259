# =============================================================================
# Ingestion Worker — Extract → Embed → Store for One Job
# =============================================================================
#
# STATE MACHINE (per job):
#
#   DEQUEUED → EXTRACTING → EMBEDDING → STORING → ACKED
#                  ↘ (error at any stage) → FAILED → queue.fail(job, error)
#
# process() runs the pipeline and RETURNS a JobResult. Its only queue call is
# extend_lease() between stages, so a slow job keeps its lease; if the lease
# is gone the job stops with LeaseLostError. report() turns the result into
# ack() or fail(). The pool driver calls both (handle()), so the outcome of
# every job flows through one explicit value rather than event callbacks.
#
# All collaborators are injected: the queue, the fetcher/extractor pair,
# the embedding client and the vector-store writer. Tests pass fakes;
# build_worker() wires the production implementations from settings.
#
# ERROR CLASSIFICATION:
#   FetchError, EmbeddingError, StoreError, unexpected exceptions → retryable
#   ExtractionError, EmptyContentError → permanent; DEAD immediately when
#     dead_letter_permanent_errors is set, otherwise they consume attempts
# =============================================================================

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field

from pdf_ingest.config import Settings, settings
from pdf_ingest.exceptions import (
    EmptyContentError,
    IngestionError,
    LeaseLostError,
    QueueError,
)
from pdf_ingest.services.chunker import chunk_text
from pdf_ingest.services.embedder import EmbeddingClient, build_embedding_client
from pdf_ingest.services.extractor import TextExtractor
from pdf_ingest.services.fetcher import DocumentFetcher, build_fetcher
from pdf_ingest.services.job_queue import IngestionJob, JobQueue
from pdf_ingest.services.vectorstore import (
    EmbeddingRecord,
    VectorStoreWriter,
    get_vector_store_writer,
    record_id,
)

logger = logging.getLogger(__name__)


class JobStage(str, enum.Enum):
    DEQUEUED = "dequeued"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    STORING = "storing"
    ACKED = "acked"


@dataclass
class JobResult:
    """
    Outcome of processing one job.

    On failure, `stage` is where the error happened and `error` is the
    exception that will be reported to the queue.
    """

    job_id: str
    stage: JobStage
    error: BaseException | None = None
    record_ids: list[str] = field(default_factory=list)
    page_count: int = 0
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        if self.error is None:
            return False
        if isinstance(self.error, IngestionError):
            return self.error.retryable
        return True


class IngestionWorker:
    """Processes leased jobs; one instance is shared by all pool threads."""

    def __init__(
        self,
        queue: JobQueue,
        embedder: EmbeddingClient,
        store: VectorStoreWriter,
        *,
        fetcher: DocumentFetcher | None = None,
        extractor: TextExtractor | None = None,
        collection: str = "ragapp",
        chunk_strategy: str = "document",
        chunk_size: int = 512,
        chunk_overlap: int = 50,
        dead_letter_permanent_errors: bool = True,
        worker_id: str = "pdf-ingest-worker",
    ) -> None:
        if chunk_strategy not in ("document", "tokens"):
            raise ValueError(f"Unknown chunk strategy: {chunk_strategy!r}")
        self.queue = queue
        self._embedder = embedder
        self._store = store
        self._fetcher = fetcher
        self._extractor = extractor
        self._collection = collection
        self._chunk_strategy = chunk_strategy
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._dead_letter_permanent = dead_letter_permanent_errors
        self.worker_id = worker_id

    # -- Pipeline ------------------------------------------------------------

    def process(self, job: IngestionJob) -> JobResult:
        """Run extract → embed → store for one job. Raises only QueueError."""
        started = time.monotonic()
        result = JobResult(job_id=job.id, stage=JobStage.DEQUEUED)

        logger.info(
            "Job started: job_id=%s, attempt=%d/%d, document_ref=%s",
            job.id, job.attempt, job.max_attempts, job.document_ref,
            extra={
                "event": "job.started",
                "job_id": job.id,
                "attempt": job.attempt,
                "worker_id": self.worker_id,
            },
        )

        try:
            result.stage = JobStage.EXTRACTING
            pages = self._load_pages(job)
            result.page_count = len(pages)

            # Single-document strategy: one blob, pages separated by a space
            full_text = " ".join(pages).strip()
            if not full_text:
                raise EmptyContentError(
                    f"PDF text is empty or couldn't be parsed: {job.document_ref}"
                )
            logger.info("[%s] Extracted %d pages, %d characters", job.id, len(pages), len(full_text))
            self._renew_lease(job)

            result.stage = JobStage.EMBEDDING
            records = self._embed(job, full_text, len(pages))
            self._renew_lease(job)

            result.stage = JobStage.STORING
            for record in records:
                result.record_ids.append(self._store.store(record, self._collection))

            result.stage = JobStage.ACKED
        except QueueError:
            raise
        except IngestionError as exc:
            result.error = exc
            logger.warning("[%s] %s failed: %s", job.id, result.stage.value, exc)
        except Exception as exc:
            result.error = exc
            logger.exception("[%s] Unexpected error while %s", job.id, result.stage.value)

        result.duration_seconds = time.monotonic() - started
        return result

    def report(self, job: IngestionJob, result: JobResult) -> IngestionJob | None:
        """
        Acknowledge or fail the job on the queue according to result.

        QueueError from the queue propagates: the caller must stop.
        """
        if result.succeeded:
            return self.queue.ack(job.id, job.lease_token)
        if isinstance(result.error, LeaseLostError):
            return None

        retryable = result.retryable or not self._dead_letter_permanent
        return self.queue.fail(job.id, result.error, job.lease_token, retryable=retryable)

    def handle(self, job: IngestionJob) -> JobResult:
        """process() then report(); what the pool runs on each thread."""
        result = self.process(job)
        self.report(job, result)
        return result

    def run_once(self) -> JobResult | None:
        """Lease and handle a single job; None when nothing is available."""
        job = self.queue.dequeue(owner=self.worker_id)
        if job is None:
            return None
        return self.handle(job)

    def close(self) -> None:
        """Release the fetcher's HTTP connection pool."""
        if self._fetcher is not None:
            self._fetcher.close()

    # -- Steps ---------------------------------------------------------------

    def _renew_lease(self, job: IngestionJob) -> None:
        if job.lease_token is None:
            return
        if self.queue.extend_lease(job.id, job.lease_token) is None:
            raise LeaseLostError(f"Lease on job {job.id} is no longer held by {self.worker_id}")

    def _load_pages(self, job: IngestionJob) -> list[str]:
        if job.extracted_text is not None:
            pages = [page.strip() for page in job.extracted_text if page and page.strip()]
        else:
            if self._fetcher is None or self._extractor is None:
                raise IngestionError(
                    "Job has no extracted text and no fetcher/extractor is configured",
                    retryable=False,
                )
            data = self._fetcher.fetch(job.document_ref)
            pages = self._extractor.extract(data, job.original_filename or "document.pdf")

        if not pages:
            raise EmptyContentError(
                f"PDF text is empty or couldn't be parsed: {job.document_ref}"
            )
        return pages

    def _embed(self, job: IngestionJob, full_text: str, page_count: int) -> list[EmbeddingRecord]:
        metadata = {
            "source": job.document_ref,
            "job_id": job.id,
            "original_filename": job.original_filename,
            "page_count": page_count,
        }

        if self._chunk_strategy == "document":
            vector = self._embedder.embed(full_text)
            return [EmbeddingRecord(
                id=record_id(job.document_ref),
                vector=vector,
                source_text=full_text,
                metadata=metadata,
            )]

        chunks = chunk_text(full_text, self._chunk_size, self._chunk_overlap)
        if not chunks:
            raise EmptyContentError(f"No chunks produced for {job.document_ref}")
        vectors = self._embedder.embed_many([c.content for c in chunks])
        return [
            EmbeddingRecord(
                id=record_id(job.document_ref, chunk.chunk_index),
                vector=vector,
                source_text=chunk.content,
                metadata={
                    **metadata,
                    "chunk_index": chunk.chunk_index,
                    "chunk_count": len(chunks),
                    "token_count": chunk.token_count,
                },
            )
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]


def build_worker(queue: JobQueue, config: Settings | None = None) -> IngestionWorker:
    """Wire an IngestionWorker with the production collaborators."""
    cfg = config or settings
    return IngestionWorker(
        queue,
        build_embedding_client(cfg),
        get_vector_store_writer(cfg),
        fetcher=build_fetcher(cfg),
        extractor=TextExtractor(),
        collection=cfg.vector_collection,
        chunk_strategy=cfg.chunk_strategy,
        chunk_size=cfg.chunk_size,
        chunk_overlap=cfg.chunk_overlap,
        dead_letter_permanent_errors=cfg.dead_letter_permanent_errors,
        worker_id=cfg.worker_id,
    )
