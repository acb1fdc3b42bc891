"""Content cleaning, tag normalization and insight extraction."""

from .cleaner import CleanerConfig, ContentCleaner, clean_content
from .extraction import ExtractionConfig, HeuristicExtractor, InsightExtractor, OpenAIExtractor
from .tags import normalize_tag, normalize_tags

__all__ = [
    "CleanerConfig",
    "ContentCleaner",
    "ExtractionConfig",
    "HeuristicExtractor",
    "InsightExtractor",
    "OpenAIExtractor",
    "clean_content",
    "normalize_tag",
    "normalize_tags",
]
