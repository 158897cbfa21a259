# =============================================================================
# Ingestion API — Enqueue Documents and Track Jobs
# =============================================================================
#
# The upload handler stores the PDF itself; this API only hands the queue a
# reference to it and reports job state afterwards.
#
# ENDPOINTS:
#   POST /ingest/jobs                 — Enqueue a document, return job_id (202)
#   GET  /ingest/jobs                 — Recent jobs, optionally by status
#   GET  /ingest/jobs/{job_id}        — Poll one job
#   POST /ingest/jobs/{job_id}/retry  — Requeue a dead job
#   GET  /ingest/stats                — Job counts per status
#
# JobQueue is synchronous (SQLAlchemy sessions, row locks), so every call is
# pushed to a thread with asyncio.to_thread() to keep the event loop free.
# =============================================================================

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from pdf_ingest.api.deps import get_queue
from pdf_ingest.db.models import JobStatus
from pdf_ingest.exceptions import InvalidJobStateError, JobNotFoundError
from pdf_ingest.models.requests import EnqueueJobRequest, RetryJobRequest
from pdf_ingest.models.responses import (
    EnqueueJobResponse,
    JobResponse,
    QueueStatsResponse,
)
from pdf_ingest.services.job_queue import (
    BackoffPolicy,
    EnqueueOptions,
    IngestionJob,
    JobPayload,
    JobQueue,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["Ingestion"])


def _job_response(job: IngestionJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        document_ref=job.document_ref,
        original_filename=job.original_filename,
        status=job.status.value,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        created_at=job.created_at,
        available_at=job.available_at,
        last_attempt_at=job.last_attempt_at,
        finished_at=job.finished_at,
        lease_owner=job.lease_owner,
        last_error=job.last_error,
        last_error_kind=job.last_error_kind,
        last_retry_delay=job.last_retry_delay,
    )


# ---------------------------------------------------------------------------
# POST /ingest/jobs — Enqueue a document
# ---------------------------------------------------------------------------


@router.post(
    "/jobs",
    response_model=EnqueueJobResponse,
    status_code=202,
    summary="Queue an uploaded document for ingestion",
    description=(
        "Returns immediately with a job_id. The document is NOT available "
        "for retrieval until the job reaches 'completed'."
    ),
)
async def enqueue_job(
    request: EnqueueJobRequest,
    queue: JobQueue = Depends(get_queue),
) -> EnqueueJobResponse:
    try:
        payload = JobPayload(
            document_ref=request.document_ref,
            original_filename=request.original_filename,
            extracted_text=request.extracted_text,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    defaults = queue.default_options
    options = EnqueueOptions(
        max_attempts=request.max_attempts or defaults.max_attempts,
        backoff=BackoffPolicy(
            kind=request.backoff_kind,
            base_delay=(
                request.backoff_base_delay
                if request.backoff_base_delay is not None
                else defaults.backoff.base_delay
            ),
            max_delay=defaults.backoff.max_delay,
        ),
    )

    job_id = await asyncio.to_thread(queue.enqueue, payload, options)

    return EnqueueJobResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message=f"Document '{request.original_filename or request.document_ref}' queued.",
    )


# ---------------------------------------------------------------------------
# GET /ingest/jobs — Recent jobs
# ---------------------------------------------------------------------------


@router.get(
    "/jobs",
    response_model=list[JobResponse],
    summary="List recent ingestion jobs",
)
async def list_jobs(
    status: JobStatus | None = Query(default=None, description="Filter by status"),
    limit: int = Query(default=50, ge=1, le=500),
    queue: JobQueue = Depends(get_queue),
) -> list[JobResponse]:
    jobs = await asyncio.to_thread(queue.list_jobs, status, limit)
    return [_job_response(job) for job in jobs]


# ---------------------------------------------------------------------------
# GET /ingest/jobs/{job_id} — Poll one job
# ---------------------------------------------------------------------------


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Check ingestion job status",
    description=(
        "Poll until status is 'completed' or 'dead'. last_error carries the "
        "most recent failure for failed-retryable and dead jobs."
    ),
)
async def get_job(
    job_id: str,
    queue: JobQueue = Depends(get_queue),
) -> JobResponse:
    try:
        job = await asyncio.to_thread(queue.get, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _job_response(job)


# ---------------------------------------------------------------------------
# POST /ingest/jobs/{job_id}/retry — Requeue a dead job
# ---------------------------------------------------------------------------


@router.post(
    "/jobs/{job_id}/retry",
    response_model=JobResponse,
    summary="Requeue a dead job with a fresh attempt budget",
)
async def retry_job(
    job_id: str,
    request: RetryJobRequest | None = None,
    queue: JobQueue = Depends(get_queue),
) -> JobResponse:
    options = None
    if request is not None and request.max_attempts is not None:
        current = await _get_or_404(queue, job_id)
        options = EnqueueOptions(
            max_attempts=request.max_attempts,
            backoff=current.backoff,
        )

    try:
        job = await asyncio.to_thread(queue.retry_dead, job_id, options)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    logger.info("Dead job requeued via API: job_id=%s", job_id)
    return _job_response(job)


# ---------------------------------------------------------------------------
# GET /ingest/stats — Job counts per status
# ---------------------------------------------------------------------------


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Job counts per status",
)
async def queue_stats(queue: JobQueue = Depends(get_queue)) -> QueueStatsResponse:
    counts = await asyncio.to_thread(queue.counts)
    return QueueStatsResponse(total=sum(counts.values()), by_status=counts)


async def _get_or_404(queue: JobQueue, job_id: str) -> IngestionJob:
    try:
        return await asyncio.to_thread(queue.get, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
