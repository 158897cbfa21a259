# =============================================================================
# Job Queue — Durable, Lease-Based Work Queue (SQLAlchemy)
# =============================================================================
#
# Decouples producers (the upload handler) from consumers (ingestion
# workers). Jobs live in the `ingestion_jobs` table, so the queue survives
# process restarts.
#
# DELIVERY:
#   enqueue()  → row inserted as PENDING, available immediately
#   dequeue()  → next available row is leased (IN_PROGRESS, lease_token,
#                lease_expires_at = now + visibility_timeout, attempt += 1)
#   extend_lease() → lease_expires_at pushed out again while the worker runs
#   ack()      → COMPLETED
#   fail()     → FAILED_RETRYABLE with available_at = now + backoff
#                or DEAD when attempts are exhausted
#
# LEASES:
# A lease is claimed with a conditional UPDATE whose WHERE clause repeats the
# "is claimable" predicate. Only one of several concurrent claimers can see
# rowcount == 1, so at most one worker holds a job at a time. On PostgreSQL
# the candidate SELECT also takes FOR UPDATE SKIP LOCKED so concurrent
# workers spread over different rows instead of contending for the same one.
#
# When a worker dies without ack/fail its lease is left to expire: once
# lease_expires_at passes, the job is claimable again. If that redelivery
# would exceed max_attempts, the job is moved to DEAD instead.
# A live worker keeps its lease by calling extend_lease() while it works.
#
# ATTEMPT COUNTING:
# `attempt` counts deliveries. It is incremented when a lease is granted, so
# after the n-th failure attempt == n and the next delay is
# base_delay * 2^(n-1). A job that fails max_attempts times ends DEAD with
# attempt == max_attempts.
#
# Every SQLAlchemy failure is re-raised as QueueError. Callers treat it as
# fatal: continuing without durable state would silently drop work.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Generator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pdf_ingest.config import Settings, settings
from pdf_ingest.db.engine import get_engine, get_session_factory
from pdf_ingest.db.models import IngestionJobRecord, JobStatus, init_queue_schema
from pdf_ingest.exceptions import (
    InvalidJobStateError,
    JobNotFoundError,
    QueueError,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Stored error messages are truncated to keep rows small
_MAX_ERROR_LENGTH = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay schedule between delivery attempts.

    exponential: base_delay * 2^(attempt-1)  → 5s, 10s, 20s, ...
    fixed:       base_delay every time
    Both are capped at max_delay when it is set.
    """

    kind: Literal["exponential", "fixed"] = "exponential"
    base_delay: float = 5.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.kind not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff kind: {self.kind!r}")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.kind == "fixed":
            delay = self.base_delay
        else:
            delay = self.base_delay * (2 ** max(attempt - 1, 0))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass(frozen=True)
class EnqueueOptions:
    """Per-job delivery options: retry ceiling and backoff schedule."""

    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass
class JobPayload:
    """What a producer hands to enqueue(): a reference to an uploaded document."""

    document_ref: str
    original_filename: str | None = None
    # Optional pre-extracted page strings; the worker extracts lazily if None
    extracted_text: list[str] | None = None

    def __post_init__(self) -> None:
        if not self.document_ref or not self.document_ref.strip():
            raise ValueError("document_ref must be a non-empty string")


@dataclass
class IngestionJob:
    """
    Read-only snapshot of a queue row.

    Workers receive one from dequeue(); the queue returns fresh snapshots
    from ack()/fail() so callers can inspect the resulting state.
    """

    id: str
    document_ref: str
    original_filename: str | None
    extracted_text: list[str] | None
    status: JobStatus
    attempt: int
    max_attempts: int
    backoff: BackoffPolicy
    created_at: datetime
    available_at: datetime
    last_attempt_at: datetime | None = None
    lease_token: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    last_retry_delay: float | None = None
    finished_at: datetime | None = None


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class JobQueue:
    """
    Durable ingestion queue on top of a SQLAlchemy session factory.

    Thread-safe: every operation opens its own short session, and all
    cross-worker arbitration happens in the database.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        visibility_timeout: float = 300.0,
        default_options: EnqueueOptions | None = None,
        clock: Clock = utcnow,
        claim_batch_size: int = 10,
    ) -> None:
        if visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be > 0")
        self._session_factory = session_factory
        self._visibility_timeout = visibility_timeout
        self._default_options = default_options or EnqueueOptions()
        self._clock = clock
        self._claim_batch_size = claim_batch_size

    @property
    def default_options(self) -> EnqueueOptions:
        return self._default_options

    # -- Producer side -------------------------------------------------------

    def enqueue(self, job: JobPayload, options: EnqueueOptions | None = None) -> str:
        """
        Persist a new job and return its id. Never waits for processing.

        Raises:
            QueueError: if the row could not be written.
        """
        opts = options or self._default_options
        now = self._clock()
        job_id = uuid.uuid4().hex

        with self._session() as session:
            session.add(IngestionJobRecord(
                id=job_id,
                document_ref=job.document_ref,
                original_filename=job.original_filename,
                extracted_text=list(job.extracted_text) if job.extracted_text is not None else None,
                status=JobStatus.PENDING,
                attempt=0,
                max_attempts=opts.max_attempts,
                backoff_kind=opts.backoff.kind,
                backoff_base_delay=opts.backoff.base_delay,
                backoff_max_delay=opts.backoff.max_delay,
                available_at=now,
                created_at=now,
                updated_at=now,
            ))

        logger.info(
            "Job enqueued: job_id=%s, document_ref=%s, max_attempts=%d, backoff=%s/%.1fs",
            job_id, job.document_ref, opts.max_attempts,
            opts.backoff.kind, opts.backoff.base_delay,
            extra={
                "event": "job.enqueued",
                "job_id": job_id,
                "document_ref": job.document_ref,
                "max_attempts": opts.max_attempts,
            },
        )
        return job_id

    # -- Consumer side -------------------------------------------------------

    def dequeue(self, owner: str | None = None) -> IngestionJob | None:
        """
        Lease the next available job, or return None if nothing is due.

        Jobs become available when they are PENDING, when their backoff
        window has elapsed (FAILED_RETRYABLE), or when a previous lease
        expired without ack/fail.
        """
        now = self._clock()

        with self._session() as session:
            self._reap_exhausted_leases(session, now)
            self._promote_due_retries(session, now)

            candidates = session.execute(
                select(IngestionJobRecord.id)
                .where(self._claimable(now))
                .order_by(IngestionJobRecord.available_at, IngestionJobRecord.created_at)
                .limit(self._claim_batch_size)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            for job_id in candidates:
                lease_token = uuid.uuid4().hex
                result = session.execute(
                    update(IngestionJobRecord)
                    .where(IngestionJobRecord.id == job_id, self._claimable(now))
                    .values(
                        status=JobStatus.IN_PROGRESS,
                        attempt=IngestionJobRecord.attempt + 1,
                        lease_token=lease_token,
                        lease_owner=owner,
                        lease_expires_at=now + timedelta(seconds=self._visibility_timeout),
                        last_attempt_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another worker claimed it between SELECT and UPDATE
                    continue

                row = session.get(IngestionJobRecord, job_id, populate_existing=True)
                return _to_job(row)

        return None

    def extend_lease(self, job_id: str, lease_token: str) -> IngestionJob | None:
        """
        Push a held lease's expiry to now + visibility_timeout.

        Long-running jobs call this between stages (and the worker pool on a
        heartbeat) so a slow but live worker keeps its job. Returns None when
        the lease is no longer held.
        """
        now = self._clock()

        with self._session() as session:
            result = session.execute(
                update(IngestionJobRecord)
                .where(
                    IngestionJobRecord.id == job_id,
                    IngestionJobRecord.status == JobStatus.IN_PROGRESS,
                    IngestionJobRecord.lease_token == lease_token,
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=self._visibility_timeout),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("Cannot extend lease for job_id=%s: lease no longer held", job_id)
                return None
            row = session.get(IngestionJobRecord, job_id, populate_existing=True)
            job = _to_job(row)

        logger.debug("Lease extended: job_id=%s, expires_at=%s", job.id, job.lease_expires_at)
        return job

    def ack(self, job_id: str, lease_token: str | None = None) -> IngestionJob | None:
        """
        Mark a leased job COMPLETED.

        Returns None (and logs a warning) when the caller no longer holds the
        lease, e.g. because it expired and the job was redelivered.
        """
        now = self._clock()

        with self._session() as session:
            conditions = [
                IngestionJobRecord.id == job_id,
                IngestionJobRecord.status == JobStatus.IN_PROGRESS,
            ]
            if lease_token is not None:
                conditions.append(IngestionJobRecord.lease_token == lease_token)

            result = session.execute(
                update(IngestionJobRecord)
                .where(*conditions)
                .values(
                    status=JobStatus.COMPLETED,
                    lease_token=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = session.get(IngestionJobRecord, job_id, populate_existing=True)
            if row is None:
                raise JobNotFoundError(job_id)
            if result.rowcount != 1:
                logger.warning(
                    "Ignoring ack for job_id=%s: lease no longer held (status=%s)",
                    job_id, row.status.value,
                )
                return None
            job = _to_job(row)

        logger.info(
            "Job completed: job_id=%s, attempt=%d, document_ref=%s",
            job.id, job.attempt, job.document_ref,
            extra={"event": "job.completed", "job_id": job.id, "attempt": job.attempt},
        )
        return job

    def fail(
        self,
        job_id: str,
        error: BaseException | str,
        lease_token: str | None = None,
        *,
        retryable: bool = True,
    ) -> IngestionJob | None:
        """
        Record a failed attempt.

        If attempts remain and the error is retryable, the job becomes
        FAILED_RETRYABLE and is redelivered after its backoff delay.
        Otherwise it becomes DEAD and keeps the error for inspection.

        Returns the updated snapshot, or None when the lease was lost.
        """
        now = self._clock()
        error_kind = type(error).__name__ if isinstance(error, BaseException) else "Error"
        message = f"{error_kind}: {error}"[:_MAX_ERROR_LENGTH]

        with self._session() as session:
            row = session.get(
                IngestionJobRecord, job_id, with_for_update=True, populate_existing=True,
            )
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != JobStatus.IN_PROGRESS or (
                lease_token is not None and row.lease_token != lease_token
            ):
                logger.warning(
                    "Ignoring failure for job_id=%s: lease no longer held (status=%s)",
                    job_id, row.status.value,
                )
                return None

            row.last_error = message
            row.last_error_kind = error_kind
            row.lease_token = None
            row.lease_owner = None
            row.lease_expires_at = None
            row.updated_at = now

            if retryable and row.attempt < row.max_attempts:
                delay = _policy_of(row).delay_for(row.attempt)
                row.status = JobStatus.FAILED_RETRYABLE
                row.available_at = now + timedelta(seconds=delay)
                row.last_retry_delay = delay
            else:
                row.status = JobStatus.DEAD
                row.finished_at = now

            session.flush()
            job = _to_job(row)

        if job.status == JobStatus.DEAD:
            logger.error(
                "Job dead: job_id=%s, attempt=%d/%d, document_ref=%s, error=%s",
                job.id, job.attempt, job.max_attempts, job.document_ref, message,
                extra={
                    "event": "job.dead",
                    "job_id": job.id,
                    "attempt": job.attempt,
                    "error": message,
                    "retryable": retryable,
                },
            )
        else:
            logger.warning(
                "Job failed: job_id=%s, attempt=%d/%d, retry_in=%.1fs, error=%s",
                job.id, job.attempt, job.max_attempts, job.last_retry_delay, message,
                extra={
                    "event": "job.failed",
                    "job_id": job.id,
                    "attempt": job.attempt,
                    "error": message,
                    "retry_delay": job.last_retry_delay,
                },
            )
        return job

    # -- Operator side -------------------------------------------------------

    def get(self, job_id: str) -> IngestionJob:
        """Return a snapshot of one job. Raises JobNotFoundError."""
        with self._session() as session:
            row = session.get(IngestionJobRecord, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return _to_job(row)

    def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[IngestionJob]:
        """Most recent jobs first, optionally filtered by status."""
        with self._session() as session:
            stmt = select(IngestionJobRecord).order_by(
                IngestionJobRecord.created_at.desc(),
            ).limit(limit)
            if status is not None:
                stmt = stmt.where(IngestionJobRecord.status == status)
            return [_to_job(row) for row in session.execute(stmt).scalars()]

    def counts(self) -> dict[str, int]:
        """Number of jobs per status (every status present, zero-filled)."""
        with self._session() as session:
            rows = session.execute(
                select(IngestionJobRecord.status, func.count())
                .group_by(IngestionJobRecord.status)
            ).all()
        totals = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            totals[JobStatus(status).value] = count
        return totals

    def retry_dead(self, job_id: str, options: EnqueueOptions | None = None) -> IngestionJob:
        """
        Requeue a DEAD job with a fresh attempt budget.

        Raises:
            JobNotFoundError: unknown id.
            InvalidJobStateError: the job is not DEAD.
        """
        now = self._clock()

        with self._session() as session:
            row = session.get(IngestionJobRecord, job_id, with_for_update=True)
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != JobStatus.DEAD:
                raise InvalidJobStateError(
                    f"Only dead jobs can be retried (job {job_id} is {row.status.value})"
                )
            if options is not None:
                row.max_attempts = options.max_attempts
                row.backoff_kind = options.backoff.kind
                row.backoff_base_delay = options.backoff.base_delay
                row.backoff_max_delay = options.backoff.max_delay
            row.status = JobStatus.PENDING
            row.attempt = 0
            row.available_at = now
            row.finished_at = None
            row.last_retry_delay = None
            row.updated_at = now
            session.flush()
            job = _to_job(row)

        logger.info(
            "Dead job requeued: job_id=%s, max_attempts=%d",
            job.id, job.max_attempts,
            extra={"event": "job.enqueued", "job_id": job.id, "requeued": True},
        )
        return job

    def purge(self, older_than: timedelta) -> int:
        """Delete COMPLETED and DEAD jobs last updated before now - older_than."""
        cutoff = self._clock() - older_than
        with self._session() as session:
            result = session.execute(
                delete(IngestionJobRecord)
                .where(
                    IngestionJobRecord.status.in_([JobStatus.COMPLETED, JobStatus.DEAD]),
                    IngestionJobRecord.updated_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d finished jobs older than %s", purged, older_than)
        return purged

    # -- Internal helpers ----------------------------------------------------

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        """Session scope that turns storage failures into QueueError."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise QueueError(f"Queue backing store failure: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _claimable(now: datetime):
        return or_(
            and_(
                IngestionJobRecord.status == JobStatus.PENDING,
                IngestionJobRecord.available_at <= now,
            ),
            and_(
                IngestionJobRecord.status == JobStatus.IN_PROGRESS,
                IngestionJobRecord.lease_expires_at < now,
                IngestionJobRecord.attempt < IngestionJobRecord.max_attempts,
            ),
        )

    def _promote_due_retries(self, session: Session, now: datetime) -> None:
        session.execute(
            update(IngestionJobRecord)
            .where(
                IngestionJobRecord.status == JobStatus.FAILED_RETRYABLE,
                IngestionJobRecord.available_at <= now,
            )
            .values(status=JobStatus.PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _exhausted_leases(now: datetime):
        # Locked so two concurrent dequeues cannot reap the same row
        return (
            select(IngestionJobRecord)
            .where(
                IngestionJobRecord.status == JobStatus.IN_PROGRESS,
                IngestionJobRecord.lease_expires_at < now,
                IngestionJobRecord.attempt >= IngestionJobRecord.max_attempts,
            )
            .with_for_update(skip_locked=True)
        )

    def _reap_exhausted_leases(self, session: Session, now: datetime) -> None:
        """Expired leases on the final attempt go DEAD instead of redelivering."""
        expired: Sequence[IngestionJobRecord] = session.execute(
            self._exhausted_leases(now)
        ).scalars().all()

        for row in expired:
            message = (
                f"LeaseExpired: worker {row.lease_owner or '?'} did not report "
                f"a result for attempt {row.attempt}"
            )
            row.status = JobStatus.DEAD
            row.last_error = message
            row.last_error_kind = "LeaseExpired"
            row.lease_token = None
            row.lease_owner = None
            row.lease_expires_at = None
            row.finished_at = now
            row.updated_at = now
            logger.error(
                "Job dead: job_id=%s, attempt=%d/%d, error=%s",
                row.id, row.attempt, row.max_attempts, message,
                extra={"event": "job.dead", "job_id": row.id, "attempt": row.attempt},
            )
        if expired:
            session.flush()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def build_queue(config: Settings | None = None) -> JobQueue:
    """JobQueue on the default engine, with delivery defaults from settings."""
    cfg = config or settings
    init_queue_schema(get_engine())
    return JobQueue(
        get_session_factory(),
        visibility_timeout=cfg.queue_visibility_timeout_seconds,
        default_options=EnqueueOptions(
            max_attempts=cfg.queue_max_attempts,
            backoff=BackoffPolicy(
                kind="exponential",
                base_delay=cfg.queue_backoff_base_seconds,
                max_delay=cfg.queue_backoff_max_seconds,
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _aware(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _policy_of(row: IngestionJobRecord) -> BackoffPolicy:
    return BackoffPolicy(
        kind=row.backoff_kind,  # type: ignore[arg-type]
        base_delay=row.backoff_base_delay,
        max_delay=row.backoff_max_delay,
    )


def _to_job(row: IngestionJobRecord) -> IngestionJob:
    return IngestionJob(
        id=row.id,
        document_ref=row.document_ref,
        original_filename=row.original_filename,
        extracted_text=list(row.extracted_text) if row.extracted_text is not None else None,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        backoff=_policy_of(row),
        created_at=_aware(row.created_at),
        available_at=_aware(row.available_at),
        last_attempt_at=_aware(row.last_attempt_at),
        lease_token=row.lease_token,
        lease_owner=row.lease_owner,
        lease_expires_at=_aware(row.lease_expires_at),
        last_error=row.last_error,
        last_error_kind=row.last_error_kind,
        last_retry_delay=row.last_retry_delay,
        finished_at=_aware(row.finished_at),
    )
