"""Capture processing pipeline: cleaner -> extractor -> embedder -> store."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from sentinelkb.embeddings.service import EmbeddingBackend, insight_embedding_text
from sentinelkb.errors import CaptureNotFoundError, EmbeddingDimensionError, PipelineError, ProcessingTimeoutError
from sentinelkb.metrics.observability import PipelineMetrics, get_logger
from sentinelkb.models import CaptureStatus, ProcessedInsight, RawCapture, new_id, utcnow
from sentinelkb.processing.cleaner import ContentCleaner
from sentinelkb.processing.extraction import InsightExtractor
from sentinelkb.processing.tags import normalize_tags
from sentinelkb.storage.base import CaptureStore


class ProcessingOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    MISSING = "missing"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProcessingResult:
    capture_id: str
    outcome: ProcessingOutcome
    capture: RawCapture | None = None
    error: str | None = None


class Deadline:
    """Per-item processing budget measured on a monotonic clock."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds if seconds is not None else None

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self, stage: str) -> None:
        if self.expired:
            raise ProcessingTimeoutError(f"Processing exceeded {self._seconds:g}s during {stage}")


class CapturePipeline:
    """Drives one capture through the processing state machine.

    ``pending -> processing -> completed | failed``. The claim is a
    compare-and-set on the store, so concurrent runs for one capture id
    collapse to a single insight. Backend failures are absorbed by the
    extractor and embedder fallbacks; anything else fails the capture.
    """

    def __init__(
        self,
        store: CaptureStore,
        extractor: InsightExtractor,
        embedder: EmbeddingBackend,
        *,
        cleaner: ContentCleaner | None = None,
        item_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._embedder = embedder
        self._cleaner = cleaner or ContentCleaner()
        self._item_timeout = item_timeout
        self._clock = clock
        self._logger = get_logger("pipeline")

    def process(self, capture_id: str, *, resume: bool = False, record_failure: bool = True) -> ProcessingResult:
        """Process a capture to a terminal state.

        ``resume`` lets a retrying queue re-enter a capture left in
        ``processing`` by an earlier attempt. With ``record_failure`` unset a
        failed attempt raises :class:`PipelineError` and leaves the capture in
        ``processing`` for the next attempt; otherwise the capture is marked
        failed and this method does not raise.
        """

        start = time.perf_counter()
        claimable = {CaptureStatus.PENDING}
        if resume:
            claimable.add(CaptureStatus.PROCESSING)
        try:
            capture = self._store.transition(capture_id, claimable, CaptureStatus.PROCESSING)
            if capture is None:
                return self._unclaimed(capture_id, start)
            self._logger.info("pipeline.claimed", capture_id=capture_id, resume=resume)
            insight = self._build_insight(capture, Deadline(self._item_timeout, self._clock))
            completed = self._store.complete(capture_id, insight)
        except CaptureNotFoundError:
            # Deleted while processing
            return self._finish(capture_id, ProcessingOutcome.MISSING, start)
        except Exception as exc:
            return self._handle_failure(capture_id, exc, start, record_failure=record_failure)
        self._logger.info(
            "pipeline.completed",
            capture_id=capture_id,
            title=insight.title,
            tags=list(insight.tags),
        )
        return self._finish(capture_id, ProcessingOutcome.COMPLETED, start, capture=completed)

    def _build_insight(self, capture: RawCapture, deadline: Deadline) -> ProcessedInsight:
        clean_text = self._cleaner.clean(capture.raw_content)
        deadline.check("cleaning")
        extracted = self._extractor.extract(clean_text, capture.content_type, timeout=deadline.remaining())
        deadline.check("extraction")
        vector = self._embedder.embed(
            insight_embedding_text(extracted.title, extracted.summary, extracted.key_points),
            timeout=deadline.remaining(),
        )
        deadline.check("embedding")
        if len(vector) != self._embedder.dim:
            raise EmbeddingDimensionError(f"Embedding has {len(vector)} dimensions, expected {self._embedder.dim}")
        return ProcessedInsight(
            insight_id=new_id(),
            capture_id=capture.capture_id,
            title=extracted.title,
            summary=extracted.summary,
            key_points=tuple(extracted.key_points),
            action_items=tuple(extracted.action_items),
            tags=normalize_tags([*capture.tags, *extracted.tags]),
            embedding=tuple(vector),
            processed_at=utcnow(),
            source_title=extracted.source_title,
            author=extracted.author,
            source_url=capture.source_url,
        )

    def _unclaimed(self, capture_id: str, start: float) -> ProcessingResult:
        existing = self._store.get(capture_id)
        if existing is None:
            return self._finish(capture_id, ProcessingOutcome.MISSING, start)
        self._logger.info("pipeline.skipped", capture_id=capture_id, status=existing.status.value)
        return self._finish(capture_id, ProcessingOutcome.SKIPPED, start, capture=existing)

    def _handle_failure(
        self, capture_id: str, exc: Exception, start: float, *, record_failure: bool
    ) -> ProcessingResult:
        message = f"{type(exc).__name__}: {exc}"
        self._logger.error(
            "pipeline.failed",
            capture_id=capture_id,
            error=message,
            final=record_failure,
            exc_info=exc,
        )
        if not record_failure:
            PipelineMetrics.observe_processing(time.perf_counter() - start, "retrying")
            raise PipelineError(message) from exc
        try:
            failed = self._store.fail(capture_id, message)
        except Exception as update_exc:
            self._logger.error(
                "pipeline.mark_failed_error",
                capture_id=capture_id,
                error=str(update_exc),
                exc_info=update_exc,
            )
            failed = None
        return self._finish(capture_id, ProcessingOutcome.FAILED, start, capture=failed, error=message)

    def _finish(
        self,
        capture_id: str,
        outcome: ProcessingOutcome,
        start: float,
        *,
        capture: RawCapture | None = None,
        error: str | None = None,
    ) -> ProcessingResult:
        if outcome is ProcessingOutcome.MISSING:
            self._logger.warning("pipeline.missing", capture_id=capture_id)
        PipelineMetrics.observe_processing(time.perf_counter() - start, outcome.value)
        return ProcessingResult(capture_id=capture_id, outcome=outcome, capture=capture, error=error)
