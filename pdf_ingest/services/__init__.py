# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the pipeline building blocks, separated from API handlers and
# worker orchestration:
#   - job_queue.py: Durable lease-based job queue (SQLAlchemy)
#   - fetcher.py: Document bytes from URLs or the upload storage root
#   - extractor.py: PDF text extraction with Docling, one string per page
#   - chunker.py: Token-based text chunking (tiktoken)
#   - embedder.py: OpenAI-compatible embedding client
#   - vectorstore.py: Pluggable vector store writer (ChromaDB, pgvector)
# =============================================================================
