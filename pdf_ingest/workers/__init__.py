# =============================================================================
# Workers Package — Background Ingestion
# =============================================================================
# Handles the asynchronous side of the pipeline:
#   - ingestion.py: IngestionWorker (extract → embed → store for one job)
#   - pool.py: WorkerPool (bounded concurrent driver over the job queue)
#   - runner.py: process entry point (`python -m pdf_ingest.workers`)
# =============================================================================
