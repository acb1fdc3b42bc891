"""Content cleaning: strip low-information lines from captured text."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

NOISE_PATTERNS: tuple[str, ...] = ("http", "www.", "retweet", "share", "follow", "@", "#")

_URL_TOKEN = re.compile(r"^(?:https?://|www\.)\S*$", re.IGNORECASE)
_HASHTAG_TOKEN = re.compile(r"^#\w+[^\w\s]*$")


@dataclass(frozen=True)
class CleanerConfig:
    """Configuration for content cleaning."""

    noise_line_max_length: int = 50
    noise_patterns: tuple[str, ...] = NOISE_PATTERNS


def is_only_punctuation(line: str) -> bool:
    chars = [char for char in line if not char.isspace()]
    if not chars:
        return False
    return all(unicodedata.category(char)[0] in ("P", "S") for char in chars)


class ContentCleaner:
    """Removes URL, hashtag and punctuation noise from raw captured text.

    A line is dropped when it is short and mentions a link, share/follow
    boilerplate, a mention or a hashtag, or when it holds only punctuation and
    symbols. Surviving lines lose inline URL and hashtag tokens and have their
    whitespace collapsed. The result is never longer than the input.
    """

    def __init__(self, config: CleanerConfig | None = None) -> None:
        self._config = config or CleanerConfig()

    def is_noise_line(self, line: str) -> bool:
        stripped = line.strip()
        if len(stripped) >= self._config.noise_line_max_length:
            return False
        lowered = stripped.lower()
        return any(pattern in lowered for pattern in self._config.noise_patterns)

    def clean(self, text: str | None) -> str:
        if not text:
            return ""
        meaningful: list[str] = []
        for line in text.splitlines():
            if not line.strip() or self.is_noise_line(line) or is_only_punctuation(line):
                continue
            cleaned = self._strip_tokens(line)
            if not cleaned or is_only_punctuation(cleaned):
                continue
            meaningful.append(cleaned)
        return "\n".join(meaningful)

    @staticmethod
    def _strip_tokens(line: str) -> str:
        tokens = [
            token
            for token in line.split()
            if not _URL_TOKEN.match(token) and not _HASHTAG_TOKEN.match(token)
        ]
        return " ".join(tokens)


_default_cleaner = ContentCleaner()


def clean_content(text: str | None) -> str:
    """Clean ``text`` with the default cleaner configuration."""

    return _default_cleaner.clean(text)
