from __future__ import annotations

from prometheus_client import REGISTRY

from sentinelkb.embeddings.service import EmbeddingConfig, HashEmbeddingBackend
from sentinelkb.metrics.observability import (
    PipelineMetrics,
    TimedSection,
    bind_correlation_id,
    clear_correlation_id,
    get_correlation_id,
)


def _sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_correlation_id_binding():
    bind_correlation_id("abc")
    assert get_correlation_id() == "abc"
    clear_correlation_id()
    assert get_correlation_id() == "-"


def test_timed_section_reports_duration():
    durations = []
    with TimedSection(durations.append):
        pass
    assert len(durations) == 1
    assert durations[0] >= 0.0


def test_processing_metrics_count_outcomes():
    before = _sample("sentinelkb_captures_processed_total", {"outcome": "completed"})
    PipelineMetrics.observe_processing(0.01, "completed")
    assert _sample("sentinelkb_captures_processed_total", {"outcome": "completed"}) == before + 1


def test_hash_embedding_observes_latency():
    labels = {"backend": "hash"}
    before = _sample("sentinelkb_embedding_generation_duration_seconds_count", labels)
    HashEmbeddingBackend(EmbeddingConfig(dim=8)).embed("metrics")
    assert _sample("sentinelkb_embedding_generation_duration_seconds_count", labels) == before + 1


def test_queue_depth_gauge():
    PipelineMetrics.set_queue_depth("test-queue", 7)
    assert _sample("sentinelkb_queue_depth", {"queue": "test-queue"}) == 7
