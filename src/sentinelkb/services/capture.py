"""Accept-now, process-later capture ingestion."""

from __future__ import annotations

from typing import Protocol

from sentinelkb.metrics.observability import get_logger
from sentinelkb.models import CapturePage, CaptureRequest, CaptureStatus, ContentType, RawCapture, new_id
from sentinelkb.storage.base import CaptureStore

MAX_PAGE_SIZE = 100


class CaptureQueue(Protocol):
    def enqueue(self, item: str, timeout: float | None = None) -> object:
        ...

    def __len__(self) -> int:
        ...


class CaptureService:
    """Persists captures and hands their ids to the background queue."""

    def __init__(self, store: CaptureStore, queue: CaptureQueue, *, enqueue_timeout: float | None = None) -> None:
        self._store = store
        self._queue = queue
        self._enqueue_timeout = enqueue_timeout
        self._logger = get_logger("capture")

    def submit_capture(self, request: CaptureRequest) -> RawCapture:
        """Store a new pending capture and schedule it for processing.

        Returns as soon as the capture is persisted and enqueued. A closed or
        saturated queue raises; the capture then stays pending in the store.
        """

        capture = RawCapture(
            capture_id=new_id(),
            source_url=request.source_url,
            content_type=ContentType(request.content_type),
            raw_content=request.raw_content,
            tags=tuple(request.tags),
            metadata=dict(request.metadata),
            status=CaptureStatus.PENDING,
        )
        saved = self._store.save(capture)
        self._enqueue(saved.capture_id)
        self._logger.info(
            "capture.submitted",
            capture_id=saved.capture_id,
            content_type=saved.content_type.value,
            tags=list(saved.tags),
        )
        return saved

    def get_capture(self, capture_id: str) -> RawCapture | None:
        return self._store.get(capture_id)

    def list_captures(self, page: int = 1, page_size: int = 20) -> CapturePage:
        page = max(1, page)
        page_size = min(max(1, page_size), MAX_PAGE_SIZE)
        items, total = self._store.list_captures(offset=(page - 1) * page_size, limit=page_size)
        return CapturePage(items=list(items), total_count=total, page=page, page_size=page_size)

    def delete_capture(self, capture_id: str) -> bool:
        deleted = self._store.delete(capture_id)
        if deleted:
            self._logger.info("capture.deleted", capture_id=capture_id)
        return deleted

    def reprocess_capture(self, capture_id: str) -> RawCapture:
        """Reset a completed or failed capture to pending and enqueue it again.

        Raises :class:`CaptureNotFoundError` for unknown ids and
        :class:`CaptureStateError` while the capture is still in flight.
        """

        previous = self._store.get(capture_id)
        capture = self._store.reset(capture_id)
        try:
            self._enqueue(capture_id)
        except Exception:
            self._restore(previous)
            raise
        self._logger.info("capture.reprocess", capture_id=capture_id)
        return capture

    def _restore(self, previous: RawCapture) -> None:
        # Nothing was queued, so put the capture back where reprocess can find it
        capture_id = previous.capture_id
        if previous.status is CaptureStatus.COMPLETED and previous.insight is not None:
            self._store.transition(capture_id, {CaptureStatus.PENDING}, CaptureStatus.PROCESSING)
            self._store.complete(capture_id, previous.insight)
        else:
            self._store.fail(capture_id, previous.error_message or "Reprocess could not be queued")
        self._logger.warning("capture.reprocess_restored", capture_id=capture_id, status=previous.status.value)

    def queue_depth(self) -> int:
        return len(self._queue)

    def _enqueue(self, capture_id: str) -> None:
        try:
            self._queue.enqueue(capture_id, timeout=self._enqueue_timeout)
        except Exception as exc:
            self._logger.error("capture.enqueue_failed", capture_id=capture_id, error=str(exc))
            raise
