from __future__ import annotations

import time

import pytest

from sentinelkb.embeddings.service import EmbeddingConfig, HashEmbeddingBackend
from sentinelkb.errors import QueueClosedError
from sentinelkb.models import CaptureStatus, ContentType, RawCapture, new_id
from sentinelkb.processing.extraction import HeuristicExtractor
from sentinelkb.queue import JobState, SqlJobQueue, WorkerPool
from sentinelkb.services.pipeline import CapturePipeline
from sentinelkb.storage import SqlCaptureStore, create_engine_from_url

DIM = 16


class WallClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyExtractor:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self._delegate = HeuristicExtractor()

    def extract(self, text, content_type, *, timeout=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls} failed")
        return self._delegate.extract(text, content_type)


def _setup(failures: int, retry_delays=(5.0, 15.0, 30.0)):
    engine = create_engine_from_url("sqlite://")
    store = SqlCaptureStore(engine, embedding_dim=DIM)
    clock = WallClock()
    jobs = SqlJobQueue(engine, retry_delays=retry_delays, poll_interval=0.01, clock=clock)
    extractor = FlakyExtractor(failures)
    pipeline = CapturePipeline(store, extractor, HashEmbeddingBackend(EmbeddingConfig(dim=DIM)))
    capture = store.save(
        RawCapture(
            capture_id=new_id(),
            source_url="https://example.com/job",
            content_type=ContentType.NOTE,
            raw_content="Durable jobs survive restarts",
        )
    )
    return engine, store, clock, jobs, extractor, pipeline, capture.capture_id


def test_retries_follow_schedule_then_fail_after_four_attempts():
    _, store, clock, jobs, extractor, pipeline, capture_id = _setup(failures=100)
    job_id = jobs.enqueue(capture_id)

    for attempt, delay in enumerate((5.0, 15.0, 30.0), start=1):
        job = jobs.dequeue(timeout=0)
        assert job is not None and job.attempt == attempt
        assert jobs.run_job(job, pipeline) is JobState.SCHEDULED
        assert store.get(capture_id).status is CaptureStatus.PROCESSING
        scheduled = jobs.get_job(job_id)
        assert scheduled.next_run_at == pytest.approx(clock.now + delay)
        assert jobs.dequeue(timeout=0) is None
        clock.advance(delay)

    job = jobs.dequeue(timeout=0)
    assert job.attempt == 4
    assert jobs.run_job(job, pipeline) is JobState.FAILED
    assert extractor.calls == 4
    capture = store.get(capture_id)
    assert capture.status is CaptureStatus.FAILED
    assert capture.error_message == "RuntimeError: attempt 4 failed"
    assert jobs.job_counts()[JobState.FAILED] == 1
    assert len(jobs) == 0


def test_transient_failure_recovers_on_retry():
    _, store, clock, jobs, extractor, pipeline, capture_id = _setup(failures=2)
    jobs.enqueue(capture_id)
    assert jobs.run_job(jobs.dequeue(timeout=0), pipeline) is JobState.SCHEDULED
    clock.advance(5)
    assert jobs.run_job(jobs.dequeue(timeout=0), pipeline) is JobState.SCHEDULED
    clock.advance(15)
    assert jobs.run_job(jobs.dequeue(timeout=0), pipeline) is JobState.SUCCEEDED
    assert store.get(capture_id).status is CaptureStatus.COMPLETED
    assert jobs.job_counts()[JobState.SUCCEEDED] == 1


def test_no_retry_schedule_fails_on_first_attempt():
    _, store, _, jobs, extractor, pipeline, capture_id = _setup(failures=1, retry_delays=())
    jobs.enqueue(capture_id)
    assert jobs.run_job(jobs.dequeue(timeout=0), pipeline) is JobState.FAILED
    assert store.get(capture_id).status is CaptureStatus.FAILED


def test_stale_processing_jobs_are_recovered():
    _, store, clock, jobs, _, pipeline, capture_id = _setup(failures=0)
    job_id = jobs.enqueue(capture_id)
    claimed = jobs.dequeue(timeout=0)
    assert claimed.job_id == job_id
    assert jobs.recover_stale(older_than=60) == 0
    clock.advance(120)
    assert jobs.recover_stale(older_than=60) == 1
    retried = jobs.dequeue(timeout=0)
    assert retried.attempt == 2
    assert jobs.run_job(retried, pipeline) is JobState.SUCCEEDED
    assert store.get(capture_id).status is CaptureStatus.COMPLETED


def test_pending_jobs_survive_queue_restart():
    engine, _, clock, jobs, _, _, capture_id = _setup(failures=0)
    jobs.enqueue(capture_id)
    assert jobs.shutdown(drain=False) == []
    assert jobs.dequeue(timeout=0) is None
    with pytest.raises(QueueClosedError):
        jobs.enqueue(capture_id)

    restarted = SqlJobQueue(engine, clock=clock)
    assert len(restarted) == 1
    job = restarted.dequeue(timeout=0)
    assert job is not None and job.capture_id == capture_id


def test_worker_pool_drives_durable_retries():
    _, store, _, jobs, extractor, pipeline, capture_id = _setup(failures=1, retry_delays=(0.0,))
    pool = WorkerPool(jobs, lambda job: jobs.run_job(job, pipeline), workers=2, poll_interval=0.01)
    pool.start()
    jobs.enqueue(capture_id)
    deadline = time.monotonic() + 5
    while store.get(capture_id).status is not CaptureStatus.COMPLETED and time.monotonic() < deadline:
        time.sleep(0.01)
    pool.stop(timeout=5)
    assert store.get(capture_id).status is CaptureStatus.COMPLETED
    assert extractor.calls == 2
    assert pool.processed_count == 2
