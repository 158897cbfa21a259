# =============================================================================
# Shared Test Fixtures — Queue on SQLite, Controllable Clock
# =============================================================================
#
# Every queue test runs against SQLite, either in-memory (single shared
# connection via StaticPool) or a file in tmp_path when several threads need
# their own connections. No PostgreSQL, API keys or network required.
# =============================================================================

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pdf_ingest.db.engine import create_db_engine, create_session_factory
from pdf_ingest.db.models import init_queue_schema
from pdf_ingest.services.job_queue import BackoffPolicy, EnqueueOptions, JobQueue


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_queue(
    url: str = "sqlite://",
    *,
    clock: FakeClock | None = None,
    visibility_timeout: float = 60.0,
    max_attempts: int = 3,
    base_delay: float = 5.0,
) -> JobQueue:
    """Build a JobQueue on a fresh SQLite database."""
    engine = create_db_engine(url)
    init_queue_schema(engine)
    return JobQueue(
        create_session_factory(engine),
        visibility_timeout=visibility_timeout,
        default_options=EnqueueOptions(
            max_attempts=max_attempts,
            backoff=BackoffPolicy(kind="exponential", base_delay=base_delay),
        ),
        clock=clock or FakeClock(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock: FakeClock) -> JobQueue:
    return make_queue(clock=clock)
