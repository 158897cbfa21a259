# =============================================================================
# Error Taxonomy — Ingestion Failures
# =============================================================================
#
# Every error raised while processing a single job derives from
# IngestionError and carries a `retryable` flag. The worker catches these at
# the job boundary and reports them to the queue via fail(); none of them
# terminate the worker process.
#
# QueueError is deliberately NOT an IngestionError: it means the queue could
# not persist job state, and the worker process must stop so supervision can
# restart it.
#
#   IngestionError
#   ├── ExtractionError     (retryable=False)
#   │   └── FetchError      (retryable=True)
#   ├── EmptyContentError   (retryable=False)
#   ├── EmbeddingError      (retryable=True)
#   ├── StoreError          (retryable=True)
#   └── LeaseLostError      (not reported; another delivery owns the job)
#
#   QueueError              (fatal)
#
# JobNotFoundError and InvalidJobStateError are raised by operator-facing
# queue calls (lookups, requeue) and map to HTTP 404 / 409 in the API.
# =============================================================================

from __future__ import annotations


class IngestionError(Exception):
    """Base class for failures inside one job's processing."""

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ExtractionError(IngestionError):
    """Document bytes could not be parsed as a PDF."""

    retryable = False


class FetchError(ExtractionError):
    """Document bytes could not be retrieved from document_ref."""

    retryable = True


class EmptyContentError(IngestionError):
    """Extraction succeeded but produced no usable text."""

    retryable = False


class EmbeddingError(IngestionError):
    """Remote embedding call failed (timeout, quota, malformed response)."""


class StoreError(IngestionError):
    """Remote vector-store write failed."""


class LeaseLostError(IngestionError):
    """The job's lease expired or was taken over while it was being processed."""


class QueueError(Exception):
    """The queue's backing store failed to read or persist job state."""


class JobNotFoundError(LookupError):
    """No job with the requested id exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Ingestion job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(ValueError):
    """An operator action was requested for a job in the wrong status."""
