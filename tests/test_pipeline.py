from __future__ import annotations

import threading

import pytest

from sentinelkb.embeddings.service import EmbeddingConfig, HashEmbeddingBackend
from sentinelkb.errors import PipelineError
from sentinelkb.models import CaptureStatus, ContentType, ExtractedInsight, RawCapture, new_id
from sentinelkb.processing.extraction import NO_CONTENT_SUMMARY, NO_CONTENT_TITLE, HeuristicExtractor
from sentinelkb.services.pipeline import CapturePipeline, Deadline, ProcessingOutcome
from sentinelkb.services.search import SearchService
from sentinelkb.storage import InMemoryCaptureStore, SqlCaptureStore, create_engine_from_url

DIM = 64


class ExplodingExtractor:
    def extract(self, text, content_type, *, timeout=None):
        raise RuntimeError("extractor exploded")


class FlakyExtractor:
    """Fails the first ``failures`` calls, then delegates to the heuristic extractor."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self._delegate = HeuristicExtractor()

    def extract(self, text, content_type, *, timeout=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls} failed")
        return self._delegate.extract(text, content_type)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SlowExtractor:
    def __init__(self, clock: FakeClock, seconds: float) -> None:
        self.clock = clock
        self.seconds = seconds
        self.timeouts = []

    def extract(self, text, content_type, *, timeout=None):
        self.timeouts.append(timeout)
        self.clock.now += self.seconds
        return ExtractedInsight(title="slow", summary="slow")


class ShortVectorEmbedder:
    dim = DIM

    def embed(self, text, *, timeout=None):
        return (1.0, 0.0)


def _store() -> InMemoryCaptureStore:
    return InMemoryCaptureStore(embedding_dim=DIM)


def _pipeline(store, extractor=None, **kwargs) -> CapturePipeline:
    embedder = kwargs.pop("embedder", None) or HashEmbeddingBackend(EmbeddingConfig(dim=DIM))
    return CapturePipeline(store, extractor or HeuristicExtractor(), embedder, **kwargs)


def _submit(store, raw_content: str, tags=(), content_type=ContentType.NOTE) -> str:
    capture = RawCapture(
        capture_id=new_id(),
        source_url="https://example.com/post",
        content_type=content_type,
        raw_content=raw_content,
        tags=tuple(tags),
    )
    return store.save(capture).capture_id


def test_cleaned_text_feeds_extraction_and_tags_are_merged():
    store = _store()
    capture_id = _submit(store, "Check this great tool http://x.co #promo. It improves retention.", tags=["SaaS"])
    result = _pipeline(store).process(capture_id)
    assert result.outcome is ProcessingOutcome.COMPLETED
    capture = store.get(capture_id)
    assert capture.status is CaptureStatus.COMPLETED
    insight = capture.insight
    assert "http" not in insight.summary
    assert "#promo" not in insight.summary
    assert "retention" in insight.summary
    assert "saas" in insight.tags
    assert insight.source_url == "https://example.com/post"
    assert len(insight.embedding) == DIM


def test_semantic_search_over_fallback_embeddings():
    store = _store()
    pipeline = _pipeline(store)
    for text in ("Onboarding emails lift retention for new users", "Kubernetes scheduling deep dive"):
        pipeline.process(_submit(store, text))
    search = SearchService(store, HashEmbeddingBackend(EmbeddingConfig(dim=DIM)))
    results = search.semantic_search("retention", top_k=1, threshold=0.0)
    assert len(results) == 1
    stored_ids = {insight.insight_id for insight in store.scan_insights_with_embedding()}
    assert results[0].insight.insight_id in stored_ids
    assert -1.0 <= results[0].similarity <= 1.0


@pytest.mark.parametrize("raw", ["", "   ", "http://x.co", "#promo"])
def test_empty_content_still_completes(raw):
    store = _store()
    capture_id = _submit(store, raw)
    result = _pipeline(store).process(capture_id)
    assert result.outcome is ProcessingOutcome.COMPLETED
    insight = store.get(capture_id).insight
    assert insight.title == NO_CONTENT_TITLE
    assert insight.summary == NO_CONTENT_SUMMARY


def test_extractor_failure_marks_capture_failed():
    store = _store()
    capture_id = _submit(store, "Some text")
    result = _pipeline(store, ExplodingExtractor()).process(capture_id)
    assert result.outcome is ProcessingOutcome.FAILED
    assert result.error == "RuntimeError: extractor exploded"
    capture = store.get(capture_id)
    assert capture.status is CaptureStatus.FAILED
    assert capture.error_message == "RuntimeError: extractor exploded"
    assert capture.insight is None


def test_intermediate_attempt_raises_and_leaves_capture_processing():
    store = _store()
    capture_id = _submit(store, "Some text")
    pipeline = _pipeline(store, FlakyExtractor(failures=1))
    with pytest.raises(PipelineError, match="attempt 1 failed"):
        pipeline.process(capture_id, record_failure=False)
    assert store.get(capture_id).status is CaptureStatus.PROCESSING
    result = pipeline.process(capture_id, resume=True)
    assert result.outcome is ProcessingOutcome.COMPLETED


def test_processing_capture_is_not_reclaimed_without_resume():
    store = _store()
    capture_id = _submit(store, "Some text")
    store.transition(capture_id, {CaptureStatus.PENDING}, CaptureStatus.PROCESSING)
    result = _pipeline(store).process(capture_id)
    assert result.outcome is ProcessingOutcome.SKIPPED
    assert store.get(capture_id).status is CaptureStatus.PROCESSING


def test_terminal_capture_is_skipped():
    store = _store()
    capture_id = _submit(store, "Some text")
    pipeline = _pipeline(store)
    pipeline.process(capture_id)
    first_insight = store.get(capture_id).insight
    assert pipeline.process(capture_id).outcome is ProcessingOutcome.SKIPPED
    assert store.get(capture_id).insight.insight_id == first_insight.insight_id


def test_missing_capture_is_benign():
    result = _pipeline(_store()).process("does-not-exist")
    assert result.outcome is ProcessingOutcome.MISSING


def test_deadline_expiry_fails_capture():
    clock = FakeClock()
    store = _store()
    capture_id = _submit(store, "Some text")
    extractor = SlowExtractor(clock, seconds=10)
    result = _pipeline(store, extractor, item_timeout=5, clock=clock).process(capture_id)
    assert extractor.timeouts == [5]
    assert result.outcome is ProcessingOutcome.FAILED
    assert result.error.startswith("ProcessingTimeoutError")
    assert store.get(capture_id).status is CaptureStatus.FAILED


def test_deadline_remaining_and_check():
    clock = FakeClock()
    deadline = Deadline(2.0, clock)
    assert deadline.remaining() == 2.0
    clock.now = 1.5
    assert deadline.remaining() == pytest.approx(0.5)
    deadline.check("embedding")
    clock.now = 3.0
    assert deadline.remaining() == 0.0
    with pytest.raises(TimeoutError):
        deadline.check("embedding")
    assert Deadline(None).remaining() is None


def test_wrong_embedding_dimension_fails_capture():
    store = _store()
    capture_id = _submit(store, "Some text")
    result = _pipeline(store, embedder=ShortVectorEmbedder()).process(capture_id)
    assert result.outcome is ProcessingOutcome.FAILED
    assert result.error.startswith("EmbeddingDimensionError")


@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_concurrent_runs_produce_a_single_insight(backend):
    if backend == "memory":
        store = _store()
    else:
        store = SqlCaptureStore(create_engine_from_url("sqlite://"), embedding_dim=DIM)
    capture_id = _submit(store, "Concurrent processing should collapse to one run")
    pipeline = _pipeline(store)
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def run():
        barrier.wait()
        result = pipeline.process(capture_id)
        with lock:
            outcomes.append(result.outcome)

    threads = [threading.Thread(target=run) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(ProcessingOutcome.COMPLETED) == 1
    assert outcomes.count(ProcessingOutcome.SKIPPED) == 7
    assert len(list(store.scan_insights_with_embedding())) == 1
