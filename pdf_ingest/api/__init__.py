# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - ingest.py: Enqueue documents, poll job status, requeue dead jobs
#   - deps.py: Dependency providers (job queue)
# =============================================================================
