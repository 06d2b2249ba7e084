"""Recovery of structured JSON from free-form model output."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from answer_engine.errors import MalformedLLMResponse
from answer_engine.types import AnswerConfidence

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"\A```[\w-]*[ \t]*\n?([\s\S]*?)\s*```\s*\Z")
_CONFIDENCE_LEVELS: dict[str, AnswerConfidence] = {
    "high": "High",
    "medium": "Medium",
    "low": "Low",
}


@dataclass(slots=True)
class AnswerItem:
    """One validated element of a batch answer array."""

    question_index: int
    response: str
    confidence: AnswerConfidence
    sources: str
    reasoning: str
    inference: str
    remarks: str


def parse_json_content(text: str) -> Any:
    """Parse model output that should contain JSON.

    Tolerated shapes, tried in order:
    1. pure JSON;
    2. JSON inside a triple-backtick fence wrapping the whole reply, with or
       without a language tag;
    3. narrative text followed by a JSON array or object, recovered from the
       outermost `[...]` / `{...}` span.

    Raises:
        MalformedLLMResponse: when none of the above yields valid JSON.
    """

    raw = (text or "").strip()
    if not raw:
        raise MalformedLLMResponse("Empty LLM response", raw)

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    candidate = strip_code_fence(raw)
    if candidate != raw:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass

    for span in _json_spans(candidate):
        try:
            return json.loads(span)
        except json.JSONDecodeError:
            continue

    raise MalformedLLMResponse("Failed to parse LLM response as JSON", raw)


def strip_code_fence(value: str) -> str:
    """Return the body of a fence wrapping the whole of `value`, or `value` unchanged."""
    match = _FENCE_PATTERN.match(value.strip())
    if match is None:
        return value
    return match.group(1).strip()


def coerce_answer_items(parsed: Any, *, strict: bool = True, raw: str = "") -> list[AnswerItem]:
    """Coerce a parsed batch payload into `AnswerItem`s with safe defaults.

    A lone object is treated as a one-element array. Missing optional fields
    get defaults (`confidence="Medium"`, `sources`/`inference`/`remarks`
    `"None"`). A missing `response` is a contract violation in strict mode
    and an empty string in lenient mode. The question index is always
    required since answers are joined on it.
    """

    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, list):
        raise MalformedLLMResponse("Expected JSON array response from batch answer", raw)

    items: list[AnswerItem] = []
    for position, entry in enumerate(parsed):
        if not isinstance(entry, dict):
            raise MalformedLLMResponse(f"Invalid answer item at position {position}", raw)

        index = _coerce_index(entry.get("questionIndex"))
        if index is None:
            raise MalformedLLMResponse(
                f"Answer item at position {position} has no usable questionIndex", raw
            )

        response = entry.get("response")
        if response is None:
            if strict:
                raise MalformedLLMResponse(
                    f"Answer for question {index} is missing a response", raw
                )
            logger.warning("Answer for question %d has no response; using empty string", index)
            response = ""

        items.append(
            AnswerItem(
                question_index=index,
                response=str(response),
                confidence=_normalize_confidence(entry.get("confidence")),
                sources=_text_or(entry.get("sources"), "None"),
                reasoning=_text_or(entry.get("reasoning"), ""),
                inference=_text_or(entry.get("inference"), "None"),
                remarks=_text_or(entry.get("remarks"), "None"),
            )
        )
    return items


def _json_spans(value: str) -> list[str]:
    spans: list[tuple[int, str]] = []
    for opener, closer in (("[", "]"), ("{", "}")):
        start = value.find(opener)
        end = value.rfind(closer)
        if start != -1 and end > start:
            spans.append((start, value[start : end + 1]))
    # The span that opens first is the outermost one.
    return [span for _, span in sorted(spans, key=lambda item: item[0])]


def _coerce_index(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _normalize_confidence(value: Any) -> AnswerConfidence:
    if value is None:
        return "Medium"
    return _CONFIDENCE_LEVELS.get(str(value).strip().lower(), "Medium")


def _text_or(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, list):
        return ", ".join(str(item) for item in value) or default
    text = str(value)
    return text if text.strip() else default
