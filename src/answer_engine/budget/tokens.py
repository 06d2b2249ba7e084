"""Character-based token estimation and model-aware token thresholds.

Every budget decision in the engine goes through `estimate_tokens`. The
~4 characters/token heuristic overestimates slightly for English text, and
the batch-size and buffer constants are calibrated against that bias, so it
must not be swapped for an exact tokenizer.
"""

from __future__ import annotations

import logging
import math

from answer_engine.config import CacheConfig, EngineConfig

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n\n[... file context truncated for token limits ...]"


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def cache_threshold(model: str, config: CacheConfig | None = None) -> int:
    """Minimum stable-prefix tokens for which prompt caching is worthwhile."""
    config = config or CacheConfig()
    model_lower = (model or "").lower()
    for fragment, threshold in config.thresholds.items():
        if fragment.lower() in model_lower:
            return threshold
    return config.default_threshold


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    *,
    marker: str = TRUNCATION_MARKER,
) -> str:
    """Cut `text` so its estimate stays near `max_tokens`, appending `marker`."""
    tokens = estimate_tokens(text)
    if tokens <= max_tokens:
        return text
    logger.warning("Truncating text from %d to ~%d estimated tokens", tokens, max_tokens)
    return text[: max_tokens * CHARS_PER_TOKEN] + marker


def input_context_limit(speed: str, config: EngineConfig | None = None) -> int:
    """Input tokens a single call may use for `speed`, after the reserved buffer."""
    return (config or EngineConfig()).input_limit_for(speed)
