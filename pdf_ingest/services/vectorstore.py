# =============================================================================
# Vector Store Writer — Pluggable Backend Protocol
# =============================================================================
#
# Persists EmbeddingRecords so they become retrievable by similarity search.
# Two implementations behind one structural Protocol:
#
#   VectorStoreWriter (Protocol)
#   ├── ChromaVectorStoreWriter — ChromaDB (in-process or client/server)
#   └── PgVectorStoreWriter     — PostgreSQL + pgvector (SQLAlchemy)
#
# WRITE CONTRACT:
#   store(record, collection) → record id (the acknowledgement)
#
# Writes are upserts keyed on (collection, record.id), where the id is
# derived from document_ref (see record_id()). A job retried after a failed
# store, or redelivered after a worker crash, overwrites its earlier record
# instead of adding a duplicate.
#
# Collections are created on first write. Any backend failure (connectivity,
# dimension/schema mismatch) is raised as StoreError, which the worker
# reports as a retryable job failure.
# =============================================================================

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import chromadb
from sqlalchemy import Engine, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pdf_ingest.config import Settings, settings
from pdf_ingest.db.engine import create_db_engine, create_session_factory
from pdf_ingest.db.models import EmbeddingRow, init_vector_schema
from pdf_ingest.exceptions import StoreError

logger = logging.getLogger(__name__)

# Namespace for deterministic record ids
_RECORD_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "pdf-ingest/embedding-record")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingRecord:
    """
    A vector plus the text it represents, ready to be written.

    metadata always carries `source` → document_ref.
    """

    id: str
    vector: list[float]
    source_text: str
    metadata: dict[str, Any] = field(default_factory=dict)


def record_id(document_ref: str, chunk_index: int | None = None) -> str:
    """
    Deterministic record id for a document (or one of its chunks).

    Same document_ref → same id, so re-storing is an upsert.
    """
    key = document_ref if chunk_index is None else f"{document_ref}#{chunk_index}"
    return str(uuid.uuid5(_RECORD_NAMESPACE, key))


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStoreWriter(Protocol):
    """Write side of a vector index. Implementations must be thread-safe."""

    def store(self, record: EmbeddingRecord, collection: str) -> str:
        """
        Durably upsert one record into the named collection.

        Returns:
            The stored record id.

        Raises:
            StoreError: the write was not acknowledged.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStoreWriter:
    """
    ChromaDB-backed writer.

    - In-process (default): chromadb.Client(), data lives with the worker
    - Client/server: pass chroma_url (host) for a shared Chroma server

    Collections use cosine distance to match the pgvector backend.
    """

    def __init__(
        self,
        client: Any | None = None,
        *,
        host: str | None = None,
        port: int = 8000,
    ) -> None:
        if client is not None:
            self._client = client
        elif host:
            self._client = chromadb.HttpClient(host=host, port=port)
        else:
            self._client = chromadb.Client()
        self._collections: dict[str, Any] = {}
        self._lock = threading.Lock()

    def store(self, record: EmbeddingRecord, collection: str) -> str:
        """Upsert the record into the Chroma collection."""
        try:
            target = self._get_collection(collection)
            target.upsert(
                ids=[record.id],
                embeddings=[record.vector],
                documents=[record.source_text],
                metadatas=[_sanitise_chroma_metadata(record.metadata)],
            )
        except Exception as exc:
            raise StoreError(
                f"ChromaDB write to '{collection}' failed for record {record.id}: {exc}"
            ) from exc

        logger.info(
            "Stored record %s in ChromaDB collection '%s' (source=%s)",
            record.id, collection, record.metadata.get("source"),
        )
        return record.id

    def _get_collection(self, name: str) -> Any:
        with self._lock:
            if name not in self._collections:
                self._collections[name] = self._client.get_or_create_collection(
                    name=name,
                    metadata={"hnsw:space": "cosine"},
                )
            return self._collections[name]


# ---------------------------------------------------------------------------
# Implementation 2: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStoreWriter:
    """
    pgvector-backed writer using the embedding_records table.

    Writes are a single INSERT ... ON CONFLICT (collection, id) DO UPDATE, so
    concurrent stores of the same record cannot race. All collections share
    one table (and one vector dimension).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        statement_timeout: float | None = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout = statement_timeout

    @classmethod
    def from_engine(cls, engine: Engine, **kwargs: Any) -> PgVectorStoreWriter:
        """Create the pgvector extension and table, then build the writer."""
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        init_vector_schema(engine)
        return cls(create_session_factory(engine), **kwargs)

    def store(self, record: EmbeddingRecord, collection: str) -> str:
        """Upsert the record into embedding_records."""
        now = datetime.now(timezone.utc)
        session = self._session_factory()
        try:
            if self._statement_timeout:
                session.execute(text(
                    f"SET LOCAL statement_timeout = {int(self._statement_timeout * 1000)}"
                ))
            session.execute(_upsert_statement(record, collection, now))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(
                f"pgvector write to '{collection}' failed for record {record.id}: {exc}"
            ) from exc
        finally:
            session.close()

        logger.info(
            "Stored record %s in pgvector collection '%s' (source=%s)",
            record.id, collection, record.metadata.get("source"),
        )
        return record.id


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_store_writer(config: Settings | None = None) -> VectorStoreWriter:
    """
    Return the configured writer backend.

    - "chroma" → ChromaVectorStoreWriter (default)
    - "pgvector" → PgVectorStoreWriter on vector_database_url, falling back
      to the queue's database_url
    """
    cfg = config or settings

    if cfg.vectorstore_type == "pgvector":
        url = cfg.vector_database_url or cfg.database_url
        logger.info("Using pgvector vector store")
        return PgVectorStoreWriter.from_engine(
            create_db_engine(url, echo=cfg.debug),
            statement_timeout=cfg.store_timeout_seconds,
        )

    logger.info("Using ChromaDB vector store (%s)", cfg.chroma_url or "in-process")
    return ChromaVectorStoreWriter(host=cfg.chroma_url, port=cfg.chroma_port)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float or bool:
    - list → comma-separated string
    - None → empty string
    - anything else → str()
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised


def _upsert_statement(record: EmbeddingRecord, collection: str, now: datetime):
    table = EmbeddingRow.__table__
    stmt = pg_insert(table).values(
        collection=collection,
        id=record.id,
        content=record.source_text,
        embedding=record.vector,
        metadata=dict(record.metadata),
        created_at=now,
        updated_at=now,
    )
    # created_at keeps the first write's timestamp
    return stmt.on_conflict_do_update(
        index_elements=[table.c.collection, table.c.id],
        set_={
            "content": stmt.excluded.content,
            "embedding": stmt.excluded.embedding,
            "metadata": stmt.excluded["metadata"],
            "updated_at": stmt.excluded.updated_at,
        },
    )
