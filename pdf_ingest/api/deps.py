# =============================================================================
# API Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Route handlers receive the JobQueue through Depends(get_queue), so tests
# can swap in a queue on an in-memory database via app.dependency_overrides.
# =============================================================================

from __future__ import annotations

from functools import lru_cache

from pdf_ingest.services.job_queue import JobQueue, build_queue


@lru_cache
def get_queue() -> JobQueue:
    """Process-wide JobQueue built from settings on first request."""
    return build_queue()
