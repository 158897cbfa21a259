# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shape of data coming INTO the API. FastAPI validates request bodies against
# these models and returns 422 for anything that doesn't fit.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class EnqueueJobRequest(BaseModel):
    """
    Request body for POST /ingest/jobs — queue an already-uploaded document.

    Example:
        {
            "document_ref": "uploads/2024/q3-report.pdf",
            "original_filename": "q3-report.pdf",
            "max_attempts": 5
        }
    """

    # URL or storage key the upload handler wrote the file to
    document_ref: str = Field(
        ...,
        min_length=1,
        max_length=4096,
        description="Locator of the uploaded PDF (http(s) URL, file:// URL or storage key)",
        examples=["uploads/2024/q3-report.pdf"],
    )

    original_filename: str | None = Field(
        default=None,
        max_length=500,
        description="Filename as uploaded, kept in record metadata",
    )

    # Producers that already ran extraction can skip it on the worker
    extracted_text: list[str] | None = Field(
        default=None,
        description="Optional pre-extracted text, one string per page",
    )

    # Per-job overrides of the queue defaults
    max_attempts: int | None = Field(
        default=None,
        ge=1,
        le=50,
        description="Delivery attempts before the job goes dead. Defaults to config value (3).",
    )
    backoff_kind: Literal["exponential", "fixed"] = Field(
        default="exponential",
        description="Retry delay schedule",
    )
    backoff_base_delay: float | None = Field(
        default=None,
        ge=0,
        le=86400,
        description="Base retry delay in seconds. Defaults to config value (5.0).",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "document_ref": "uploads/2024/q3-report.pdf",
                    "original_filename": "q3-report.pdf",
                }
            ]
        }
    )


class RetryJobRequest(BaseModel):
    """Optional body for POST /ingest/jobs/{job_id}/retry."""

    max_attempts: int | None = Field(
        default=None,
        ge=1,
        le=50,
        description="Fresh attempt budget. Defaults to the job's previous max_attempts.",
    )
