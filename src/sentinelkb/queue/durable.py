"""Database-backed job queue with scheduled retries.

Jobs live in the ``capture_jobs`` table, so pending work survives a restart
and is delivered at least once. A failed attempt is rescheduled after the
next delay of the retry schedule; the capture is only marked failed on the
last attempt.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Sequence

from sqlalchemy import Engine, Float, Integer, String, Text, and_, func, or_, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from sentinelkb.errors import PipelineError, QueueClosedError
from sentinelkb.metrics.observability import PipelineMetrics, get_logger
from sentinelkb.models import new_id
from sentinelkb.services.pipeline import CapturePipeline, ProcessingOutcome
from sentinelkb.storage.sql import create_engine_from_url, engine_lock

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (5.0, 15.0, 30.0)


class JobState(str, Enum):
    ENQUEUED = "enqueued"
    PROCESSING = "processing"
    SCHEDULED = "scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobBase(DeclarativeBase):
    pass


class JobRow(JobBase):
    __tablename__ = "capture_jobs"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    capture_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_run_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)


@dataclass(frozen=True)
class Job:
    job_id: str
    capture_id: str
    attempt: int
    state: JobState
    next_run_at: float
    last_error: str | None = None


class SqlJobQueue:
    """Work queue whose items are rows in ``capture_jobs``.

    ``dequeue`` claims the oldest due job with a conditional update, so two
    workers never run the same job. Timestamps come from ``clock`` (epoch
    seconds) which tests replace to move time forward.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
        name: str = "capture-jobs",
        create_schema: bool = True,
    ) -> None:
        self._engine = engine
        self._retry_delays = tuple(float(delay) for delay in retry_delays)
        self._poll_interval = poll_interval
        self._clock = clock
        self._name = name
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._lock = engine_lock(engine)
        self._wakeup = threading.Condition()
        self._closed = False
        self._drain = True
        self._logger = get_logger("jobs")
        if create_schema:
            JobBase.metadata.create_all(bind=engine)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SqlJobQueue":
        return cls(create_engine_from_url(url), **kwargs)

    @property
    def name(self) -> str:
        return self._name

    @property
    def retry_delays(self) -> tuple[float, ...]:
        return self._retry_delays

    @property
    def max_attempts(self) -> int:
        return 1 + len(self._retry_delays)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        pending = (JobState.ENQUEUED.value, JobState.SCHEDULED.value)
        with self._lock, self._sessions() as session:
            count = session.scalar(select(func.count()).select_from(JobRow).where(JobRow.state.in_(pending)))
        return int(count or 0)

    def enqueue(self, capture_id: str, timeout: float | None = None) -> str:
        if self._closed:
            raise QueueClosedError(f"Queue {self._name} is shut down")
        now = self._clock()
        job_id = new_id()
        with self._lock, self._sessions.begin() as session:
            session.add(
                JobRow(
                    id=job_id,
                    capture_id=capture_id,
                    state=JobState.ENQUEUED.value,
                    attempts=0,
                    next_run_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
        self._publish_depth()
        with self._wakeup:
            self._wakeup.notify()
        return job_id

    def dequeue(self, timeout: float | None = None) -> Job | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._closed and not self._drain:
                return None
            job = self._claim_next()
            if job is not None:
                self._publish_depth()
                return job
            if self._closed:
                return None
            wait = self._poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            with self._wakeup:
                self._wakeup.wait(wait)

    def shutdown(self, drain: bool = True) -> list:
        """Stop handing out jobs. Undelivered jobs stay in the table."""

        self._closed = True
        self._drain = drain
        with self._wakeup:
            self._wakeup.notify_all()
        return []

    def run_job(self, job: Job, pipeline: CapturePipeline) -> JobState:
        """Run one attempt of ``job`` and record where it goes next."""

        final = job.attempt >= self.max_attempts
        try:
            result = pipeline.process(job.capture_id, resume=job.attempt > 1, record_failure=final)
        except PipelineError as exc:
            delay = self._retry_delays[job.attempt - 1]
            next_run_at = self._clock() + delay
            self._finish(job, JobState.SCHEDULED, error=str(exc), next_run_at=next_run_at)
            self._logger.warning(
                "job.retry_scheduled",
                job_id=job.job_id,
                capture_id=job.capture_id,
                attempt=job.attempt,
                delay_seconds=delay,
            )
            return JobState.SCHEDULED
        state = JobState.FAILED if result.outcome is ProcessingOutcome.FAILED else JobState.SUCCEEDED
        self._finish(job, state, error=result.error)
        self._logger.info(
            "job.finished",
            job_id=job.job_id,
            capture_id=job.capture_id,
            attempt=job.attempt,
            state=state.value,
            outcome=result.outcome.value,
        )
        return state

    def recover_stale(self, older_than: float) -> int:
        """Re-queue jobs left ``processing`` by a worker that died."""

        now = self._clock()
        with self._lock, self._sessions.begin() as session:
            result = session.execute(
                update(JobRow)
                .where(JobRow.state == JobState.PROCESSING.value, JobRow.updated_at < now - older_than)
                .values(state=JobState.ENQUEUED.value, updated_at=now)
            )
            recovered = result.rowcount
        if recovered:
            self._logger.warning("job.recovered", count=recovered)
            self._publish_depth()
        return recovered

    def get_job(self, job_id: str) -> Job | None:
        with self._lock, self._sessions() as session:
            row = session.get(JobRow, job_id)
            return self._to_job(row) if row is not None else None

    def job_counts(self) -> Mapping[JobState, int]:
        counts = {state: 0 for state in JobState}
        with self._lock, self._sessions() as session:
            for state, count in session.execute(select(JobRow.state, func.count()).group_by(JobRow.state)):
                counts[JobState(state)] = int(count)
        return counts

    def _claim_next(self) -> Job | None:
        now = self._clock()
        due = or_(
            JobRow.state == JobState.ENQUEUED.value,
            and_(JobRow.state == JobState.SCHEDULED.value, JobRow.next_run_at <= now),
        )
        with self._lock, self._sessions.begin() as session:
            candidates = session.execute(
                select(JobRow.id, JobRow.state).where(due).order_by(JobRow.next_run_at, JobRow.created_at).limit(10)
            ).all()
            for job_id, state in candidates:
                claimed = session.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id, JobRow.state == state)
                    .values(state=JobState.PROCESSING.value, attempts=JobRow.attempts + 1, updated_at=now)
                )
                if claimed.rowcount == 1:
                    row = session.get(JobRow, job_id, populate_existing=True)
                    return self._to_job(row)
        return None

    def _finish(self, job: Job, state: JobState, *, error: str | None, next_run_at: float | None = None) -> None:
        now = self._clock()
        values: dict = {"state": state.value, "last_error": error, "updated_at": now}
        if next_run_at is not None:
            values["next_run_at"] = next_run_at
        with self._lock, self._sessions.begin() as session:
            session.execute(update(JobRow).where(JobRow.id == job.job_id).values(**values))
        self._publish_depth()

    def _publish_depth(self) -> None:
        PipelineMetrics.set_queue_depth(self._name, len(self))

    @staticmethod
    def _to_job(row: JobRow) -> Job:
        return Job(
            job_id=row.id,
            capture_id=row.capture_id,
            attempt=row.attempts,
            state=JobState(row.state),
            next_run_at=row.next_run_at,
            last_error=row.last_error,
        )
