from __future__ import annotations

import time

import pytest

from sentinelkb.config import Settings
from sentinelkb.embeddings.service import HashEmbeddingBackend, OpenAIEmbeddingBackend
from sentinelkb.models import CaptureRequest, CaptureStatus, ContentType
from sentinelkb.processing.extraction import HeuristicExtractor, OpenAIExtractor
from sentinelkb.queue import InMemoryWorkQueue, SqlJobQueue
from sentinelkb.runtime import build_embedder, build_extractor, build_runtime
from sentinelkb.storage import InMemoryCaptureStore, SqlCaptureStore


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "embedding_dim": 32,
        "job_poll_interval_seconds": 0.01,
        "shutdown_timeout_seconds": 5,
    }
    values.update(overrides)
    return Settings(**values)


def test_default_runtime_is_in_memory():
    runtime = build_runtime(make_settings())
    assert isinstance(runtime.store, InMemoryCaptureStore)
    assert isinstance(runtime.queue, InMemoryWorkQueue)
    assert isinstance(runtime.embedder, HashEmbeddingBackend)
    assert isinstance(runtime.extractor, HeuristicExtractor)


def test_openai_backends_need_a_key():
    keyless = make_settings(embedding_backend="openai", extraction_backend="openai")
    assert isinstance(build_embedder(keyless), HashEmbeddingBackend)
    assert isinstance(build_extractor(keyless), HeuristicExtractor)

    keyed = make_settings(embedding_backend="openai", extraction_backend="openai", openai_api_key="sk-test")
    embedder = build_embedder(keyed)
    extractor = build_extractor(keyed)
    assert isinstance(embedder, OpenAIEmbeddingBackend)
    assert isinstance(extractor, OpenAIExtractor)
    embedder.close()
    extractor.close()


def test_durable_queue_requires_database():
    with pytest.raises(ValueError):
        build_runtime(make_settings(queue_backend="durable"))


def test_durable_runtime_processes_captures():
    runtime = build_runtime(make_settings(database_url="sqlite://", queue_backend="durable"))
    assert isinstance(runtime.store, SqlCaptureStore)
    assert isinstance(runtime.queue, SqlJobQueue)

    runtime.start()
    try:
        capture = runtime.capture_service.submit_capture(
            CaptureRequest(
                source_url="https://example.com/durable",
                content_type=ContentType.ARTICLE,
                raw_content="Durable queues keep jobs across restarts.",
                tags=("Ops",),
            )
        )
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            current = runtime.capture_service.get_capture(capture.capture_id)
            if current.status.is_terminal:
                break
            time.sleep(0.02)
    finally:
        runtime.stop()

    current = runtime.capture_service.get_capture(capture.capture_id)
    assert current.status is CaptureStatus.COMPLETED
    assert "ops" in current.insight.tags
