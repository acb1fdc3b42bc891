"""In-process capture store."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Collection, Iterable, Iterator, Mapping, Sequence

from sentinelkb.errors import CaptureNotFoundError, CaptureStateError
from sentinelkb.models import CaptureStatus, ProcessedInsight, RawCapture, Tag, new_id, utcnow
from sentinelkb.processing.tags import normalize_tags
from sentinelkb.storage.base import check_embedding_dim


class InMemoryCaptureStore:
    """Dictionary-backed store guarded by a single re-entrant lock.

    Captures are copied on the way in and out so callers never share mutable
    state with the store. Insights keep completion order, which is the natural
    order reported by the scan methods.
    """

    def __init__(self, *, embedding_dim: int | None = None) -> None:
        self._embedding_dim = embedding_dim
        self._lock = threading.RLock()
        self._captures: dict[str, RawCapture] = {}
        self._insights: dict[str, ProcessedInsight] = {}
        self._tags: dict[str, Tag] = {}

    def save(self, capture: RawCapture) -> RawCapture:
        with self._lock:
            if capture.capture_id in self._captures:
                raise CaptureStateError(f"Capture {capture.capture_id} already exists")
            self.get_or_create_tags(capture.tags)
            self._captures[capture.capture_id] = self._copy(capture)
            return self._view(capture.capture_id)

    def get(self, capture_id: str) -> RawCapture | None:
        with self._lock:
            if capture_id not in self._captures:
                return None
            return self._view(capture_id)

    def transition(
        self, capture_id: str, from_statuses: Collection[CaptureStatus], to_status: CaptureStatus
    ) -> RawCapture | None:
        with self._lock:
            capture = self._captures.get(capture_id)
            if capture is None or capture.status not in from_statuses:
                return None
            capture.status = to_status
            return self._view(capture_id)

    def complete(self, capture_id: str, insight: ProcessedInsight) -> RawCapture:
        with self._lock:
            capture = self._captures.get(capture_id)
            if capture is None:
                raise CaptureNotFoundError(f"Capture {capture_id} not found")
            if capture.status is not CaptureStatus.PROCESSING:
                raise CaptureStateError(f"Capture {capture_id} is {capture.status.value}, not processing")
            check_embedding_dim(insight, self._embedding_dim)
            self.get_or_create_tags(insight.tags)
            # Re-insert so completion order is preserved after a reprocess
            self._insights.pop(capture_id, None)
            self._insights[capture_id] = insight
            capture.status = CaptureStatus.COMPLETED
            capture.processed_at = insight.processed_at
            capture.error_message = None
            return self._view(capture_id)

    def fail(self, capture_id: str, message: str) -> RawCapture | None:
        with self._lock:
            capture = self._captures.get(capture_id)
            if capture is None:
                return None
            self._insights.pop(capture_id, None)
            capture.status = CaptureStatus.FAILED
            capture.processed_at = utcnow()
            capture.error_message = message
            return self._view(capture_id)

    def reset(self, capture_id: str) -> RawCapture:
        with self._lock:
            capture = self._captures.get(capture_id)
            if capture is None:
                raise CaptureNotFoundError(f"Capture {capture_id} not found")
            if not capture.status.is_terminal:
                raise CaptureStateError(f"Capture {capture_id} is still {capture.status.value}")
            self._insights.pop(capture_id, None)
            capture.status = CaptureStatus.PENDING
            capture.processed_at = None
            capture.error_message = None
            return self._view(capture_id)

    def delete(self, capture_id: str) -> bool:
        with self._lock:
            self._insights.pop(capture_id, None)
            return self._captures.pop(capture_id, None) is not None

    def list_captures(self, *, offset: int = 0, limit: int = 20) -> tuple[Sequence[RawCapture], int]:
        with self._lock:
            ordered = sorted(self._captures.values(), key=lambda c: c.created_at, reverse=True)
            page = [self._view(c.capture_id) for c in ordered[offset : offset + limit]]
            return page, len(ordered)

    def scan_insights_with_embedding(self) -> Iterator[ProcessedInsight]:
        with self._lock:
            snapshot = [insight for insight in self._insights.values() if insight.embedding]
        yield from snapshot

    def scan_insights_by_tags(self, names: Iterable[str]) -> Iterator[ProcessedInsight]:
        wanted = set(normalize_tags(names))
        if not wanted:
            return
        with self._lock:
            snapshot = [
                insight
                for insight in self._insights.values()
                if wanted.intersection(normalize_tags(insight.tags))
            ]
        yield from snapshot

    def get_or_create_tags(self, names: Iterable[str]) -> list[Tag]:
        with self._lock:
            tags: list[Tag] = []
            for name in normalize_tags(names):
                tag = self._tags.get(name)
                if tag is None:
                    tag = Tag(tag_id=new_id(), name=name)
                    self._tags[name] = tag
                tags.append(tag)
            return tags

    def count_by_status(self) -> Mapping[CaptureStatus, int]:
        with self._lock:
            counts = {status: 0 for status in CaptureStatus}
            for capture in self._captures.values():
                counts[capture.status] += 1
            return counts

    def _view(self, capture_id: str) -> RawCapture:
        capture = self._copy(self._captures[capture_id])
        if capture.status is CaptureStatus.COMPLETED:
            capture.insight = self._insights.get(capture_id)
        else:
            capture.insight = None
        return capture

    @staticmethod
    def _copy(capture: RawCapture) -> RawCapture:
        return replace(capture, tags=tuple(capture.tags), metadata=dict(capture.metadata), insight=None)
