"""Packaging of answers with the prompt that produced them, plus usage."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from answer_engine.execution.parser import AnswerItem
from answer_engine.prompts.composition import AssembledPrompt
from answer_engine.types import AnswerRecord, Transparency, UsageInfo


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TransparencyRecorder:
    """Builds one `Transparency` per batch call.

    The instance is shared by reference between every record of the batch;
    nothing copies or mutates it afterwards.
    """

    def __init__(self, clock: Callable[[], str] = _utc_now) -> None:
        self._clock = clock

    def build_transparency(
        self,
        assembled: AssembledPrompt,
        composition_id: str | None = None,
        *,
        system_prompt: str | None = None,
    ) -> Transparency:
        return Transparency(
            system_prompt=assembled.prompt if system_prompt is None else system_prompt,
            composition_id=composition_id or assembled.composition_id,
            block_ids=tuple(assembled.block_ids),
            runtime_block_ids=tuple(assembled.runtime_block_ids),
            assembled_at=self._clock(),
        )


def split_tokens(usage: UsageInfo | None, count: int) -> int | None:
    """Even per-question share of a call's tokens; the remainder is dropped."""
    if usage is None or count < 1:
        return None
    return usage.total_tokens // count


def build_records(
    items: Sequence[AnswerItem],
    transparency: Transparency,
    usage: UsageInfo | None,
    batch_size: int,
) -> tuple[AnswerRecord, ...]:
    tokens_used = split_tokens(usage, batch_size)
    return tuple(
        AnswerRecord(
            question_index=item.question_index,
            response=item.response,
            confidence=item.confidence,
            sources=item.sources,
            reasoning=item.reasoning,
            inference=item.inference,
            remarks=item.remarks,
            transparency=transparency,
            tokens_used=tokens_used,
            usage=usage,
        )
        for item in items
    )


@dataclass(frozen=True, slots=True)
class CacheMetrics:
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    hit_rate: float | None


def cache_metrics(usage: UsageInfo) -> CacheMetrics:
    """Cache counters for one call; `hit_rate` is a percentage of cached input."""
    created = usage.cache_creation_tokens or 0
    read = usage.cache_read_tokens or 0
    cached = created + read
    return CacheMetrics(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cache_creation_tokens=created,
        cache_read_tokens=read,
        hit_rate=read / cached * 100 if cached else None,
    )


def format_cache_metrics(metrics: CacheMetrics) -> str:
    parts = [f"input={metrics.input_tokens}", f"output={metrics.output_tokens}"]
    if metrics.cache_creation_tokens:
        parts.append(f"cache_write={metrics.cache_creation_tokens}")
    if metrics.cache_read_tokens:
        parts.append(f"cache_read={metrics.cache_read_tokens}")
    if metrics.hit_rate is not None:
        parts.append(f"hit_rate={metrics.hit_rate:.0f}%")
    return " ".join(parts)
