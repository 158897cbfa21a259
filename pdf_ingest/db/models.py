# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌────────────────────────────────┐    ┌──────────────────────────────┐
# │  ingestion_jobs                │    │  embedding_records           │
# ├────────────────────────────────┤    ├──────────────────────────────┤
# │ id (PK, uuid hex)              │    │ id (PK, uuid5 of source)     │
# │ document_ref                   │    │ collection                   │
# │ original_filename              │    │ content (text)               │
# │ extracted_text (json)          │    │ embedding (vector(N))        │
# │ status / attempt / max_attempts│    │ metadata_ (json / jsonb)     │
# │ backoff_kind / base / max      │    │ created_at / updated_at      │
# │ available_at                   │    └──────────────────────────────┘
# │ lease_token / owner / expires  │
# │ last_error / last_retry_delay  │
# │ created_at / last_attempt_at   │
# │ finished_at / updated_at       │
# └────────────────────────────────┘
#
# ingestion_jobs is the queue's durable backing store. embedding_records is
# only used by the pgvector writer; the two share a declarative Base but are
# created independently (see init_queue_schema / PgVectorStoreWriter).
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    DateTime,
    Engine,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pdf_ingest.config import settings

# Plain JSON everywhere, JSONB on PostgreSQL
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class JobStatus(str, enum.Enum):
    """
    Queue state of an ingestion job.

    State machine:
        PENDING → IN_PROGRESS → COMPLETED
                      │
                      ├──▶ FAILED_RETRYABLE ──(backoff elapses)──▶ PENDING
                      │
                      └──▶ DEAD   (attempts exhausted or permanent error)

    The FAILED_RETRYABLE ⇄ PENDING cycle is bounded by max_attempts.
    """

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed-retryable"
    DEAD = "dead"


class IngestionJobRecord(Base):
    """One row per enqueued document; mutated only by JobQueue."""

    __tablename__ = "ingestion_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    # Locator of the already-uploaded document (URL or storage key)
    document_ref: Mapped[str] = mapped_column(Text, nullable=False)
    original_filename: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Page strings pre-extracted by the producer; NULL means extract lazily
    extracted_text: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Delivery bookkeeping
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    backoff_base_delay: Mapped[float] = mapped_column(Float, nullable=False)
    backoff_max_delay: Mapped[float | None] = mapped_column(Float, nullable=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Lease held by the worker currently processing the job
    lease_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Most recent failure, kept on the row for operator inspection
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_kind: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_retry_delay: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    __table_args__ = (
        Index("ix_ingestion_jobs_status_available", "status", "available_at"),
        Index("ix_ingestion_jobs_status_lease", "status", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<IngestionJobRecord(id={self.id}, status={self.status}, "
            f"attempt={self.attempt}/{self.max_attempts})>"
        )


class EmbeddingRow(Base):
    """
    A stored embedding, written by PgVectorStoreWriter.

    Keyed by (collection, record id): re-storing the same document after a
    retry overwrites its row, while the same document stored into two
    collections keeps one row per collection.
    """

    __tablename__ = "embedding_records"

    collection: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(Vector(settings.embedding_dimensions), nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def init_queue_schema(engine: Engine) -> None:
    """Create the ingestion_jobs table (and its indexes) if missing."""
    Base.metadata.create_all(engine, tables=[IngestionJobRecord.__table__])


def init_vector_schema(engine: Engine) -> None:
    """Create the embedding_records table if missing (PostgreSQL + pgvector)."""
    Base.metadata.create_all(engine, tables=[EmbeddingRow.__table__])
