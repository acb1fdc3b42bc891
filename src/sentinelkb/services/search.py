"""Semantic and tag search over processed insights."""

from __future__ import annotations

import heapq
import time
from typing import Iterable, List

from sentinelkb.embeddings.service import EmbeddingBackend, cosine_similarity
from sentinelkb.metrics.observability import PipelineMetrics, get_logger
from sentinelkb.models import SemanticSearchResult, TagSearchResult
from sentinelkb.processing.tags import normalize_tags
from sentinelkb.storage.base import CaptureStore


def _rank_key(result: SemanticSearchResult):
    return (result.similarity, result.insight.processed_at)


class SearchService:
    """Exact-scan search; every insight with an embedding is compared."""

    def __init__(self, store: CaptureStore, embedder: EmbeddingBackend) -> None:
        self._store = store
        self._embedder = embedder
        self._logger = get_logger("search")

    def semantic_search(self, query: str, top_k: int = 5, threshold: float = 0.5) -> List[SemanticSearchResult]:
        """Return up to ``top_k`` insights with similarity ``>= threshold``.

        Ordered by similarity, most similar first; equal scores put the most
        recently processed insight first.
        """

        start = time.perf_counter()
        if top_k <= 0:
            return []
        query_vector = self._embedder.embed(query)
        candidates: list[SemanticSearchResult] = []
        skipped = 0
        for insight in self._store.scan_insights_with_embedding():
            if len(insight.embedding) != len(query_vector):
                skipped += 1
                continue
            similarity = cosine_similarity(query_vector, insight.embedding)
            if similarity < threshold:
                continue
            candidates.append(SemanticSearchResult(insight=insight, similarity=similarity))
        if skipped:
            self._logger.warning(
                "search.dimension_mismatch",
                skipped=skipped,
                expected=len(query_vector),
            )
        results = heapq.nlargest(top_k, candidates, key=_rank_key)
        PipelineMetrics.observe_search(time.perf_counter() - start, "semantic", len(results))
        self._logger.info(
            "search.semantic",
            top_k=top_k,
            threshold=threshold,
            scanned=len(candidates) + skipped,
            returned=len(results),
        )
        return results

    def search_by_tags(
        self, tags: Iterable[str], match_all: bool = False, *, newest_first: bool = False
    ) -> List[TagSearchResult]:
        start = time.perf_counter()
        wanted = set(normalize_tags(tags))
        if not wanted:
            return []
        matches = []
        for insight in self._store.scan_insights_by_tags(wanted):
            have = set(normalize_tags(insight.tags))
            matched = wanted.issubset(have) if match_all else bool(wanted & have)
            if matched:
                matches.append(insight)
        if newest_first:
            matches.sort(key=lambda insight: insight.processed_at, reverse=True)
        results = [TagSearchResult(insight=insight) for insight in matches]
        PipelineMetrics.observe_search(time.perf_counter() - start, "tags", len(results))
        self._logger.info(
            "search.tags",
            tags=sorted(wanted),
            match_all=match_all,
            returned=len(results),
        )
        return results
