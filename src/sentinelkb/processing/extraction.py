"""Insight extraction backends."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import httpx

from sentinelkb.errors import BackendError
from sentinelkb.metrics.observability import PipelineMetrics
from sentinelkb.models import ContentType, ExtractedInsight
from sentinelkb.processing.cleaner import ContentCleaner
from sentinelkb.processing.prompts import SYSTEM_PROMPT, build_extraction_prompt

LOGGER = logging.getLogger(__name__)

NO_CONTENT_TITLE = "No content"
NO_CONTENT_SUMMARY = "No content was captured."

_WORD = re.compile(r"[^\W\d_]{4,}")
_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)

STOPWORDS = frozenset(
    {
        "about", "after", "again", "also", "been", "before", "being", "could", "does", "doing",
        "each", "from", "have", "here", "into", "just", "like", "more", "most", "much", "only",
        "other", "over", "same", "should", "some", "such", "than", "that", "their", "them",
        "then", "there", "these", "they", "this", "those", "through", "very", "want", "were",
        "what", "when", "where", "which", "while", "will", "with", "would", "your", "great",
        "really", "check", "thing", "things", "make", "makes",
    }
)


@dataclass(frozen=True)
class ExtractionConfig:
    """Configuration for insight extraction."""

    title_max_length: int = 100
    summary_max_length: int = 500
    max_key_points: int = 5
    max_action_items: int = 3
    max_suggested_tags: int = 5
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    timeout_seconds: float = 20.0


class InsightExtractor(Protocol):
    """Protocol describing extraction behaviour."""

    def extract(
        self, text: str, content_type: ContentType, *, timeout: float | None = None
    ) -> ExtractedInsight:
        """Return structured insight fields for cleaned capture text."""


def _cap(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit]


class HeuristicExtractor:
    """Deterministic extractor used when no model backend is available."""

    def __init__(self, config: ExtractionConfig | None = None, cleaner: ContentCleaner | None = None) -> None:
        self._config = config or ExtractionConfig()
        self._cleaner = cleaner or ContentCleaner()

    def extract(
        self, text: str, content_type: ContentType, *, timeout: float | None = None
    ) -> ExtractedInsight:
        lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
        if not lines:
            return ExtractedInsight(title=NO_CONTENT_TITLE, summary=NO_CONTENT_SUMMARY)
        meaningful = [line for line in lines if not self._cleaner.is_noise_line(line)]
        title_source = meaningful[0] if meaningful else lines[0]
        return ExtractedInsight(
            title=_cap(title_source, self._config.title_max_length),
            summary=_cap(" ".join(lines), self._config.summary_max_length),
            key_points=tuple(meaningful[: self._config.max_key_points]),
            action_items=(),
            tags=self._keywords(" ".join(lines)),
        )

    def _keywords(self, text: str) -> tuple[str, ...]:
        words = [word for word in _WORD.findall(text.lower()) if word not in STOPWORDS]
        if not words:
            return ()
        counts = Counter(words)
        first_seen: dict[str, int] = {}
        for index, word in enumerate(words):
            first_seen.setdefault(word, index)
        ranked = sorted(counts, key=lambda word: (-counts[word], first_seen[word]))
        return tuple(ranked[: self._config.max_suggested_tags])


class OpenAIExtractor:
    """Extractor backed by an OpenAI-compatible chat completions endpoint.

    Any transport error, non-2xx response, timeout or malformed payload is
    logged and answered by the fallback extractor instead.
    """

    def __init__(
        self,
        api_key: str,
        config: ExtractionConfig | None = None,
        *,
        base_url: str = "https://api.openai.com/v1",
        client: httpx.Client | None = None,
        fallback: InsightExtractor | None = None,
    ) -> None:
        self._config = config or ExtractionConfig()
        self._fallback = fallback or HeuristicExtractor(self._config)
        self._client = client or httpx.Client(base_url=base_url)
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def extract(
        self, text: str, content_type: ContentType, *, timeout: float | None = None
    ) -> ExtractedInsight:
        if not (text or "").strip():
            return self._fallback.extract(text, content_type)
        try:
            payload = self._chat(build_extraction_prompt(text, content_type), timeout=timeout)
            return self._parse(payload)
        except (httpx.HTTPError, BackendError, ValueError, KeyError, TypeError, IndexError) as exc:
            LOGGER.warning("Falling back to heuristic extraction: %s", exc)
            PipelineMetrics.record_fallback("extraction")
            return self._fallback.extract(text, content_type)

    def close(self) -> None:
        self._client.close()

    def _chat(self, prompt: str, *, timeout: float | None) -> Mapping[str, Any]:
        effective = self._config.timeout_seconds
        if timeout is not None:
            if timeout <= 0:
                raise BackendError("Processing deadline exceeded before extraction")
            effective = min(effective, timeout)
        body = {
            "model": self._config.model,
            "temperature": self._config.temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        response = self._client.post("/chat/completions", json=body, headers=self._headers, timeout=effective)
        if response.status_code >= 400:
            raise BackendError(f"Extraction backend HTTP {response.status_code}: {response.text[:200]}")
        return response.json()

    def _parse(self, payload: Mapping[str, Any]) -> ExtractedInsight:
        content = str(payload["choices"][0]["message"]["content"] or "").strip()
        fenced = _FENCE.match(content)
        if fenced:
            content = fenced.group(1)
        data = json.loads(content)
        if not isinstance(data, dict):
            raise BackendError("Extraction backend returned a non-object JSON payload")
        fields = {str(key).lower(): value for key, value in data.items()}
        title = str(fields.get("title") or "").strip()
        summary = str(fields.get("summary") or "").strip()
        if not title or not summary:
            raise BackendError("Extraction backend response is missing title or summary")
        key_points = fields.get("key_points") or fields.get("keyinsights") or fields.get("key_insights")
        return ExtractedInsight(
            title=_cap(title, self._config.title_max_length),
            summary=_cap(summary, self._config.summary_max_length),
            key_points=_as_str_list(key_points)[: self._config.max_key_points],
            action_items=_as_str_list(fields.get("action_items") or fields.get("actionitems"))[
                : self._config.max_action_items
            ],
            source_title=_optional_str(fields.get("source_title") or fields.get("sourcetitle")),
            author=_optional_str(fields.get("author")),
            tags=_as_str_list(fields.get("tags")),
        )


def _as_str_list(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value.strip(),) if value.strip() else ()
    if isinstance(value, Sequence):
        return tuple(str(item).strip() for item in value if str(item).strip())
    return ()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
