"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
    cosine_similarity,
    insight_embedding_text,
    l2_normalize,
)

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "HashEmbeddingBackend",
    "OpenAIEmbeddingBackend",
    "cosine_similarity",
    "insight_embedding_text",
    "l2_normalize",
]
