# =============================================================================
# FastAPI Application — Ingestion Enqueue/Status API
# =============================================================================
#
# Run with:
#   uvicorn pdf_ingest.main:app --reload
#
# Workers run as a separate process (python -m pdf_ingest.workers); the API
# and the workers only share the ingestion_jobs table.
# =============================================================================

import logging

from fastapi import FastAPI

from pdf_ingest.api.ingest import router as ingest_router
from pdf_ingest.config import settings
from pdf_ingest.models.responses import HealthResponse

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Queue uploaded PDF documents for asynchronous text extraction, "
        "embedding and vector-store indexing, and track their progress."
    ),
)

app.include_router(ingest_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness check; does not touch the database."""
    return HealthResponse(version=settings.app_version, service=settings.app_name)
