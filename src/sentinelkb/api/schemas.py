"""Pydantic models for the sentinel-kb API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator

from sentinelkb.models import CaptureStatus, ContentType, ProcessedInsight, RawCapture

MAX_CONTENT_LENGTH = 10_000
MAX_QUERY_LENGTH = 1_000
MAX_TAG_LENGTH = 100


def _check_tags(tags: List[str]) -> List[str]:
    for tag in tags:
        if not tag.strip():
            raise ValueError("Tags must not be empty")
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Tags must be at most {MAX_TAG_LENGTH} characters")
    return tags


class CaptureCreateRequest(BaseModel):
    source_url: HttpUrl = Field(..., description="Where the content was captured from")
    content_type: ContentType = Field(default=ContentType.OTHER)
    raw_content: str = Field(..., min_length=1, max_length=MAX_CONTENT_LENGTH)
    tags: List[str] = Field(default_factory=list, description="User supplied tags")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: List[str]) -> List[str]:
        return _check_tags(value)


class CaptureAcceptedResponse(BaseModel):
    id: str
    status: CaptureStatus
    message: str


class InsightModel(BaseModel):
    id: str
    title: str
    summary: str
    key_points: List[str]
    action_items: List[str]
    tags: List[str]
    source_title: Optional[str] = None
    author: Optional[str] = None
    source_url: str
    processed_at: datetime

    @classmethod
    def from_insight(cls, insight: ProcessedInsight) -> "InsightModel":
        return cls(
            id=insight.insight_id,
            title=insight.title,
            summary=insight.summary,
            key_points=list(insight.key_points),
            action_items=list(insight.action_items),
            tags=list(insight.tags),
            source_title=insight.source_title,
            author=insight.author,
            source_url=insight.source_url,
            processed_at=insight.processed_at,
        )


class CaptureModel(BaseModel):
    id: str
    source_url: str
    content_type: ContentType
    raw_content: str
    tags: List[str]
    metadata: Dict[str, Any]
    status: CaptureStatus
    created_at: datetime
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    insight: Optional[InsightModel] = None

    @classmethod
    def from_capture(cls, capture: RawCapture) -> "CaptureModel":
        return cls(
            id=capture.capture_id,
            source_url=capture.source_url,
            content_type=capture.content_type,
            raw_content=capture.raw_content,
            tags=list(capture.tags),
            metadata=dict(capture.metadata),
            status=capture.status,
            created_at=capture.created_at,
            processed_at=capture.processed_at,
            error_message=capture.error_message,
            insight=InsightModel.from_insight(capture.insight) if capture.insight else None,
        )


class CapturePageResponse(BaseModel):
    items: List[CaptureModel]
    total_count: int
    page: int
    page_size: int


class SemanticSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=MAX_QUERY_LENGTH)
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class TagSearchRequest(BaseModel):
    tags: List[str] = Field(..., min_length=1)
    match_all: bool = False

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: List[str]) -> List[str]:
        return _check_tags(value)


class SearchHit(BaseModel):
    insight: InsightModel
    similarity: Optional[float] = None


class SearchResponse(BaseModel):
    results: List[SearchHit]
    count: int
