# =============================================================================
# Database Package
# =============================================================================
# SQLAlchemy engine/session helpers and ORM models for the queue backing
# store (ingestion_jobs) and the pgvector writer (embedding_records).
# =============================================================================
