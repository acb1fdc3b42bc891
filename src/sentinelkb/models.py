"""Shared domain models used across the capture pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class CaptureStatus(str, Enum):
    """Lifecycle of a capture: pending -> processing -> completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CaptureStatus.COMPLETED, CaptureStatus.FAILED)


class ContentType(str, Enum):
    TWEET = "tweet"
    ARTICLE = "article"
    CODE = "code"
    NOTE = "note"
    OTHER = "other"


@dataclass(frozen=True)
class Tag:
    """Normalized label shared across captures and insights."""

    tag_id: str
    name: str


@dataclass(frozen=True)
class ExtractedInsight:
    """Structured fields produced by an insight extractor."""

    title: str
    summary: str
    key_points: Sequence[str] = ()
    action_items: Sequence[str] = ()
    source_title: str | None = None
    author: str | None = None
    tags: Sequence[str] = ()


@dataclass(frozen=True)
class ProcessedInsight:
    """The distilled, searchable representation of one capture."""

    insight_id: str
    capture_id: str
    title: str
    summary: str
    key_points: tuple[str, ...]
    action_items: tuple[str, ...]
    tags: tuple[str, ...]
    embedding: tuple[float, ...]
    processed_at: datetime
    source_title: str | None = None
    author: str | None = None
    source_url: str = ""


@dataclass
class RawCapture:
    """A captured item and its processing state."""

    capture_id: str
    source_url: str
    content_type: ContentType
    raw_content: str
    tags: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    status: CaptureStatus = CaptureStatus.PENDING
    processed_at: datetime | None = None
    error_message: str | None = None
    insight: ProcessedInsight | None = None


@dataclass(frozen=True)
class CaptureRequest:
    """Input accepted by the ingestion path."""

    source_url: str
    content_type: ContentType
    raw_content: str
    tags: Sequence[str] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CapturePage:
    items: Sequence[RawCapture]
    total_count: int
    page: int
    page_size: int


@dataclass(frozen=True)
class SemanticSearchResult:
    """Insight returned by semantic search with its cosine similarity."""

    insight: ProcessedInsight
    similarity: float


@dataclass(frozen=True)
class TagSearchResult:
    insight: ProcessedInsight
