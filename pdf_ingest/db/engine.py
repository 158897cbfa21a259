# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# The queue and the pgvector writer are both driven from worker threads, so
# only a synchronous engine is used. The API layer calls into the queue via
# asyncio.to_thread() rather than maintaining a second async engine.
#
# SQLITE:
# Supported for single-host deployments and tests. SQLite's deferred
# transactions can deadlock when two connections both read and then try to
# write, so every transaction is opened with BEGIN IMMEDIATE (the recipe from
# the SQLAlchemy pysqlite docs). Writers then queue on the busy timeout
# instead of failing.
# =============================================================================

from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pdf_ingest.config import settings


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    """Create a sync engine, applying SQLite locking fixes when needed."""
    if not url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    kwargs: dict = {
        "echo": echo,
        "connect_args": {"check_same_thread": False, "timeout": 30},
    }
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every checkout sees an empty db
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """
    Session factory used by JobQueue and PgVectorStoreWriter.

    expire_on_commit=False keeps attributes readable after commit, so ORM rows
    can be turned into plain snapshots once the transaction has finished.
    """
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Default engine — lazy, built from settings on first use
# ---------------------------------------------------------------------------

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Lazily create and cache the default engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Lazily create and cache the default session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory

