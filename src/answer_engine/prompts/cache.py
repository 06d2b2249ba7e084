"""Cache-aware system prompt assembly.

Prompt caching writes cost more than a cold call, so the stable prefix is
only flagged cacheable once it is large enough for the model class. The
cacheable segment always comes first so repeated calls that differ only in
the dynamic suffix share a prefix.
"""

from __future__ import annotations

from answer_engine.budget.tokens import cache_threshold, estimate_tokens
from answer_engine.config import CacheConfig
from answer_engine.types import SystemContent, SystemSegment

SEPARATOR = "\n\n"


class CacheablePromptBuilder:
    """Splits system content into cacheable and dynamic segments."""

    def __init__(self, config: CacheConfig | None = None) -> None:
        self.config = config or CacheConfig()

    def build(
        self,
        stable_content: str,
        dynamic_content: str = "",
        model: str = "",
        *,
        force_caching: bool | None = None,
    ) -> SystemContent:
        force = self.config.force_caching if force_caching is None else force_caching
        has_dynamic = bool(dynamic_content and dynamic_content.strip())

        if not stable_content or not stable_content.strip():
            return dynamic_content.strip() if has_dynamic else ""

        below_threshold = estimate_tokens(stable_content) < cache_threshold(model, self.config)
        if below_threshold and not force:
            if has_dynamic:
                return f"{stable_content}{SEPARATOR}{dynamic_content}"
            return stable_content

        segments = [SystemSegment(text=stable_content, cacheable=True)]
        if has_dynamic:
            segments.append(SystemSegment(text=dynamic_content, cacheable=False))
        return segments


def join_system_content(content: SystemContent) -> str:
    """Flatten system content to the string the model effectively sees."""
    if isinstance(content, str):
        return content
    return SEPARATOR.join(segment.text for segment in content)


def is_cached(content: SystemContent) -> bool:
    return not isinstance(content, str) and any(segment.cacheable for segment in content)
