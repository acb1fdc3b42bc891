"""Embedding backends for sentinel-kb."""

from __future__ import annotations

import hashlib
import logging
import math
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, Tuple

import httpx

from sentinelkb.errors import BackendError
from sentinelkb.metrics.observability import PipelineMetrics, TimedSection

LOGGER = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    normalize: bool = True
    timeout_seconds: float = 20.0


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    @property
    def dim(self) -> int:
        """Fixed dimension of every vector this backend returns."""

    def embed(self, text: str, *, timeout: float | None = None) -> Tuple[float, ...]:
        """Return the embedding vector for ``text``."""


def l2_normalize(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``, or ``0.0`` when either norm is zero."""

    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    similarity = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return max(-1.0, min(1.0, similarity))


def insight_embedding_text(title: str, summary: str, key_points: Sequence[str] = ()) -> str:
    """Canonical text embedded for an insight."""

    parts = [title, summary, *key_points]
    return "\n".join(part for part in parts if part)


def _seeded_rng(seed_text: str) -> random.Random:
    digest = hashlib.sha256(seed_text.encode("utf-8")).digest()
    return random.Random(int.from_bytes(digest[:8], "big"))


class HashEmbeddingBackend:
    """Deterministic embedding fallback.

    Every word token gets a pseudo-random vector seeded from its SHA-256
    digest; a text embeds as the normalized sum of its token vectors, so
    identical input always yields the identical vector and texts sharing words
    point in similar directions. Text without word tokens is seeded as a whole.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    @property
    def dim(self) -> int:
        return self._config.dim

    def embed(self, text: str, *, timeout: float | None = None) -> Tuple[float, ...]:
        with TimedSection(lambda duration: PipelineMetrics.observe_embedding(duration, "hash")):
            return self._hash_to_vector(text or "")

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        dim = self._config.dim
        tokens = _TOKEN.findall(text.lower())
        vector = [0.0] * dim
        for seed in tokens or [text]:
            uniform = _seeded_rng(seed).uniform
            for index in range(dim):
                vector[index] += uniform(-1.0, 1.0)
        if self._config.normalize:
            return l2_normalize(vector)
        return tuple(vector)


class OpenAIEmbeddingBackend:
    """Embedding backend calling an OpenAI-compatible ``/embeddings`` endpoint.

    Failures, timeouts and vectors of the wrong dimension are logged and
    answered by the hash fallback so callers never see backend errors.
    """

    def __init__(
        self,
        api_key: str,
        config: EmbeddingConfig | None = None,
        *,
        base_url: str = "https://api.openai.com/v1",
        client: httpx.Client | None = None,
        fallback: EmbeddingBackend | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._fallback = fallback or HashEmbeddingBackend(self._config)
        self._client = client or httpx.Client(base_url=base_url)
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    @property
    def dim(self) -> int:
        return self._config.dim

    def embed(self, text: str, *, timeout: float | None = None) -> Tuple[float, ...]:
        start = time.perf_counter()
        try:
            vector = self._request(text or " ", timeout=timeout)
        except (httpx.HTTPError, BackendError, ValueError, KeyError, TypeError, IndexError) as exc:
            LOGGER.warning("Falling back to hash embeddings: %s", exc)
            PipelineMetrics.record_fallback("embedding")
            return self._fallback.embed(text, timeout=timeout)
        PipelineMetrics.observe_embedding(time.perf_counter() - start, "openai")
        if self._config.normalize:
            return l2_normalize(vector)
        return vector

    def close(self) -> None:
        self._client.close()

    def _request(self, text: str, *, timeout: float | None) -> Tuple[float, ...]:
        effective = self._config.timeout_seconds
        if timeout is not None:
            if timeout <= 0:
                raise BackendError("Processing deadline exceeded before embedding")
            effective = min(effective, timeout)
        body: dict[str, Any] = {"model": self._config.model, "input": text}
        if self._config.model.startswith("text-embedding-3"):
            body["dimensions"] = self._config.dim
        response = self._client.post("/embeddings", json=body, headers=self._headers, timeout=effective)
        if response.status_code >= 400:
            raise BackendError(f"Embedding backend HTTP {response.status_code}: {response.text[:200]}")
        payload: Mapping[str, Any] = response.json()
        vector = tuple(float(value) for value in payload["data"][0]["embedding"])
        if len(vector) != self._config.dim:
            raise BackendError(
                f"Embedding dim mismatch: configured={self._config.dim}, actual={len(vector)}"
            )
        return vector
