# =============================================================================
# PDF Ingestion Pipeline
# =============================================================================
# Turns uploaded PDF documents into vector-store records asynchronously:
# producers enqueue a reference to the document, workers extract the text,
# embed it and write the result to a vector index.
#
# Package structure:
#   pdf_ingest/
#   ├── api/          → FastAPI route handlers (enqueue, job status, requeue)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Job queue, fetch, extraction, chunking, embedding,
#   │                    vector store abstraction
#   └── workers/      → Ingestion worker, bounded worker pool, entry point
# =============================================================================
