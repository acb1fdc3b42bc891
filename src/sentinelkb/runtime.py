"""Builds the store, backends, queue and services from settings."""

from __future__ import annotations

from dataclasses import dataclass

from sentinelkb.config import Settings, get_settings
from sentinelkb.embeddings.service import (
    EmbeddingBackend,
    EmbeddingConfig,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
)
from sentinelkb.metrics.observability import get_logger
from sentinelkb.processing.extraction import (
    ExtractionConfig,
    HeuristicExtractor,
    InsightExtractor,
    OpenAIExtractor,
)
from sentinelkb.queue.durable import SqlJobQueue
from sentinelkb.queue.memory import InMemoryWorkQueue, WorkQueue
from sentinelkb.queue.worker import WorkerPool
from sentinelkb.services.capture import CaptureService
from sentinelkb.services.pipeline import CapturePipeline
from sentinelkb.services.search import SearchService
from sentinelkb.storage.base import CaptureStore
from sentinelkb.storage.memory import InMemoryCaptureStore
from sentinelkb.storage.sql import SqlCaptureStore, create_engine_from_url


@dataclass
class Runtime:
    settings: Settings
    store: CaptureStore
    embedder: EmbeddingBackend
    extractor: InsightExtractor
    pipeline: CapturePipeline
    queue: WorkQueue
    workers: WorkerPool
    capture_service: CaptureService
    search_service: SearchService

    def start(self) -> None:
        if isinstance(self.queue, SqlJobQueue):
            # Jobs still marked processing past the item timeout belong to a dead worker
            self.queue.recover_stale(self.settings.item_timeout_seconds)
        self.workers.start()

    def stop(self) -> list:
        abandoned = self.workers.stop(
            drain=self.settings.drain_on_shutdown,
            timeout=self.settings.shutdown_timeout_seconds,
        )
        for backend in (self.extractor, self.embedder):
            close = getattr(backend, "close", None)
            if callable(close):
                close()
        return abandoned


def build_embedder(settings: Settings) -> EmbeddingBackend:
    config = EmbeddingConfig(
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        timeout_seconds=settings.backend_timeout_seconds,
    )
    if settings.embedding_backend == "openai" and settings.openai_enabled:
        return OpenAIEmbeddingBackend(settings.openai_api_key, config, base_url=settings.openai_base_url)
    return HashEmbeddingBackend(config)


def build_extractor(settings: Settings) -> InsightExtractor:
    config = ExtractionConfig(
        model=settings.extraction_model,
        temperature=settings.extraction_temperature,
        timeout_seconds=settings.backend_timeout_seconds,
    )
    if settings.extraction_backend == "openai" and settings.openai_enabled:
        return OpenAIExtractor(settings.openai_api_key, config, base_url=settings.openai_base_url)
    return HeuristicExtractor(config)


def build_store(settings: Settings) -> CaptureStore:
    if settings.database_url:
        return SqlCaptureStore(create_engine_from_url(settings.database_url), embedding_dim=settings.embedding_dim)
    return InMemoryCaptureStore(embedding_dim=settings.embedding_dim)


def build_runtime(settings: Settings | None = None) -> Runtime:
    settings = settings or get_settings()
    logger = get_logger("runtime")
    store = build_store(settings)
    embedder = build_embedder(settings)
    extractor = build_extractor(settings)
    pipeline = CapturePipeline(store, extractor, embedder, item_timeout=settings.item_timeout_seconds)

    if settings.queue_backend == "durable":
        if not isinstance(store, SqlCaptureStore):
            raise ValueError("The durable queue requires SENTINELKB_DATABASE_URL")
        job_queue = SqlJobQueue(
            store.engine,
            retry_delays=settings.retry_delays_tuple,
            poll_interval=settings.job_poll_interval_seconds,
        )
        queue: WorkQueue = job_queue

        def handler(job):
            return job_queue.run_job(job, pipeline)

    else:
        queue = InMemoryWorkQueue(maxsize=settings.queue_max_size)

        def handler(capture_id):
            return pipeline.process(capture_id)

    workers = WorkerPool(
        queue,
        handler,
        workers=settings.worker_count,
        poll_interval=settings.job_poll_interval_seconds,
    )
    logger.info(
        "runtime.built",
        store=type(store).__name__,
        embedder=type(embedder).__name__,
        extractor=type(extractor).__name__,
        queue=settings.queue_backend,
        workers=settings.worker_count,
    )
    return Runtime(
        settings=settings,
        store=store,
        embedder=embedder,
        extractor=extractor,
        pipeline=pipeline,
        queue=queue,
        workers=workers,
        capture_service=CaptureService(store, queue, enqueue_timeout=settings.enqueue_timeout_seconds),
        search_service=SearchService(store, embedder),
    )
