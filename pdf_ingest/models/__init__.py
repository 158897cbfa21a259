# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API. These are separate from the ORM rows
# in pdf_ingest/db/models.py and from the queue's IngestionJob snapshots.
# =============================================================================
