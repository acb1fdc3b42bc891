"""Observability helpers for sentinel-kb."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "sentinelkb") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    captures_processed = Counter(
        "sentinelkb_captures_processed_total",
        "Captures that reached the end of a processing attempt.",
        ["outcome"],
    )
    processing_latency = Histogram(
        "sentinelkb_capture_processing_duration_seconds",
        "Time spent processing a single capture.",
        ["status"],
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0),
    )
    embedding_latency = Histogram(
        "sentinelkb_embedding_generation_duration_seconds",
        "Time spent generating an embedding vector.",
        ["backend"],
        buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    backend_fallbacks = Counter(
        "sentinelkb_backend_fallbacks_total",
        "Backend calls answered by the deterministic fallback.",
        ["operation"],
    )
    search_latency = Histogram(
        "sentinelkb_search_duration_seconds",
        "Time spent answering search requests.",
        ["mode"],
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0),
    )
    search_results = Histogram(
        "sentinelkb_search_result_count",
        "Number of results returned per search.",
        ["mode"],
        buckets=(0, 1, 2, 3, 5, 8, 13, 21, 50, 100),
    )
    queue_depth = Gauge(
        "sentinelkb_queue_depth",
        "Work items waiting in the processing queue.",
        ["queue"],
    )

    @classmethod
    def observe_processing(cls, duration_seconds: float, status: str) -> None:
        cls.processing_latency.labels(status=status).observe(duration_seconds)
        cls.captures_processed.labels(outcome=status).inc()

    @classmethod
    def observe_embedding(cls, duration_seconds: float, backend: str) -> None:
        cls.embedding_latency.labels(backend=backend).observe(duration_seconds)

    @classmethod
    def record_fallback(cls, operation: str) -> None:
        cls.backend_fallbacks.labels(operation=operation).inc()

    @classmethod
    def observe_search(cls, duration_seconds: float, mode: str, result_count: int) -> None:
        cls.search_latency.labels(mode=mode).observe(duration_seconds)
        cls.search_results.labels(mode=mode).observe(result_count)

    @classmethod
    def set_queue_depth(cls, queue: str, depth: int) -> None:
        cls.queue_depth.labels(queue=queue).set(depth)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
