"""Tag normalization.

Tags are compared and stored by their normalized name, so ``" AI "``, ``"ai"``
and ``"AI"`` all identify the same tag.
"""

from __future__ import annotations

from typing import Iterable


def normalize_tag(tag: str) -> str:
    """Trim surrounding whitespace and lower-case ``tag``.

    Whitespace-only input normalizes to ``""``; callers must drop empty results
    before using them as an identity.
    """

    return (tag or "").strip().lower()


def normalize_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    """Normalize, drop empties and deduplicate, keeping first-seen order."""

    seen: set[str] = set()
    ordered: list[str] = []
    for tag in tags or ():
        name = normalize_tag(tag)
        if not name or name in seen:
            continue
        seen.add(name)
        ordered.append(name)
    return tuple(ordered)
