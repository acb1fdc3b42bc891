"""Prompt templates for the insight extraction backend."""

from __future__ import annotations

from sentinelkb.models import ContentType

SYSTEM_PROMPT = "You are a helpful content analysis assistant. Always respond with valid JSON."

TYPE_INSTRUCTIONS = {
    ContentType.TWEET: "Extract the main point, author, and any key takeaways from this tweet.",
    ContentType.ARTICLE: "Summarize the article, extract key points, and identify any actionable advice.",
    ContentType.CODE: "Explain what this code does, its purpose, and any important technical details.",
}

DEFAULT_INSTRUCTIONS = "Extract the key information and insights from this content."

EXTRACTION_PROMPT = """
Analyze the following content and return JSON only. No markdown. No explanation.

Schema:
{{
  "title": "concise title, max 100 characters",
  "summary": "summary, max 500 characters",
  "key_points": ["up to 5 key insights"],
  "action_items": ["up to 3 actionable items, empty if none"],
  "source_title": "source title if available, else null",
  "author": "author name if available, else null",
  "tags": ["up to 5 short lowercase topic tags"]
}}

{instructions}

Content:
{content}
""".strip()


def build_extraction_prompt(content: str, content_type: ContentType) -> str:
    instructions = TYPE_INSTRUCTIONS.get(content_type, DEFAULT_INSTRUCTIONS)
    return EXTRACTION_PROMPT.format(instructions=instructions, content=content)
