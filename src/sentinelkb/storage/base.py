"""Capture store contract."""

from __future__ import annotations

from typing import Collection, Iterable, Iterator, Mapping, Protocol, Sequence

from sentinelkb.errors import EmbeddingDimensionError
from sentinelkb.models import CaptureStatus, ProcessedInsight, RawCapture, Tag


class CaptureStore(Protocol):
    """System of record for captures, insights and tags.

    Status changes go through ``transition``, ``complete``, ``fail`` and
    ``reset`` so each one is atomic with respect to concurrent readers.
    """

    def save(self, capture: RawCapture) -> RawCapture:
        """Persist a new capture and link its requested tags."""

    def get(self, capture_id: str) -> RawCapture | None:
        """Return the capture with its insight attached when completed."""

    def transition(
        self, capture_id: str, from_statuses: Collection[CaptureStatus], to_status: CaptureStatus
    ) -> RawCapture | None:
        """Compare-and-set the status; ``None`` when missing or not in ``from_statuses``."""

    def complete(self, capture_id: str, insight: ProcessedInsight) -> RawCapture:
        """Store ``insight`` and mark the capture completed in one step.

        The insight's tags are returned later in the order given here.
        """

    def fail(self, capture_id: str, message: str) -> RawCapture | None:
        """Mark the capture failed with ``message``; ``None`` when missing."""

    def reset(self, capture_id: str) -> RawCapture:
        """Move a terminal capture back to pending, dropping insight and error."""

    def delete(self, capture_id: str) -> bool:
        """Remove the capture and its insight."""

    def list_captures(self, *, offset: int = 0, limit: int = 20) -> tuple[Sequence[RawCapture], int]:
        """Return one page of captures, newest first, and the total count."""

    def scan_insights_with_embedding(self) -> Iterator[ProcessedInsight]:
        """Yield every stored insight that carries an embedding."""

    def scan_insights_by_tags(self, names: Iterable[str]) -> Iterator[ProcessedInsight]:
        """Yield insights linked to at least one of ``names``, in store order."""

    def get_or_create_tags(self, names: Iterable[str]) -> list[Tag]:
        """Return tags for the normalized ``names``, creating missing ones."""

    def count_by_status(self) -> Mapping[CaptureStatus, int]:
        """Return the number of captures per status."""


def check_embedding_dim(insight: ProcessedInsight, expected: int | None) -> None:
    if expected is not None and len(insight.embedding) != expected:
        raise EmbeddingDimensionError(
            f"Insight {insight.insight_id} has {len(insight.embedding)} dimensions, expected {expected}"
        )
