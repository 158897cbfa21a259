# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shape of data coming OUT of the API. Job responses are built from the
# queue's IngestionJob snapshots (from_attributes=True); the lease token is
# never exposed, and extracted text is summarised as a page count.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class JobResponse(BaseModel):
    """Current queue state of one ingestion job."""

    id: str
    document_ref: str
    original_filename: str | None = None
    status: str = Field(
        description="pending, in-progress, completed, failed-retryable or dead",
    )
    attempt: int
    max_attempts: int
    created_at: datetime
    available_at: datetime
    last_attempt_at: datetime | None = None
    finished_at: datetime | None = None
    lease_owner: str | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    last_retry_delay: float | None = None

    model_config = ConfigDict(from_attributes=True)


class EnqueueJobResponse(BaseModel):
    """
    Response for POST /ingest/jobs.

    The document is NOT yet in the vector store. Poll
    GET /ingest/jobs/{job_id} until status is completed or dead.
    """

    job_id: str = Field(description="Queue id for tracking ingestion progress")
    status: str = Field(default="pending")
    message: str = Field(
        default="Document queued. Ingestion in progress.",
        description="Human-readable status message",
    )


class QueueStatsResponse(BaseModel):
    """Response for GET /ingest/stats — job counts per status."""

    total: int
    by_status: dict[str, int]
