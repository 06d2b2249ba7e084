"""LLM call tracing and cost accounting."""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

logger = logging.getLogger(__name__)

TraceStatus = Literal["SUCCESS", "ERROR", "TIMEOUT"]


@dataclass(slots=True)
class TraceContext:
    trace_id: str
    feature: str
    span_name: str
    session_id: str | None = None
    parent_trace_id: str | None = None


@dataclass(slots=True)
class TraceInput:
    model: str
    system_prompt: str = ""
    user_message: str = ""
    skills: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class TraceOutput:
    input_tokens: int
    output_tokens: int
    response: str = ""
    cache_creation_tokens: int | None = None
    cache_read_tokens: int | None = None
    estimated_cost_usd: float | None = None


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    feature: str
    span_name: str
    model: str
    prompt_hash: str
    response: str
    skills: list[dict[str, str]]
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    status: TraceStatus = "SUCCESS"
    error_message: str | None = None
    session_id: str | None = None
    parent_trace_id: str | None = None


@dataclass(slots=True)
class CostModel:
    """Token pricing in USD per million tokens, keyed by model-name substring.

    Cache writes are billed at 1.25x the input price and cache reads at 0.1x;
    the remaining input tokens are billed at the base input price.
    """

    pricing: dict[str, tuple[float, float]] = field(
        default_factory=lambda: {"opus": (15.0, 75.0), "haiku": (0.25, 1.25)}
    )
    default: tuple[float, float] = (3.0, 15.0)
    cache_write_multiplier: float = 1.25
    cache_read_multiplier: float = 0.1

    def rates_for(self, model: str) -> tuple[float, float]:
        model_lower = model.lower()
        for fragment, rates in self.pricing.items():
            if fragment in model_lower:
                return rates
        return self.default

    def estimate_cost(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int | None = None,
        cache_read_tokens: int | None = None,
    ) -> float:
        input_rate, output_rate = self.rates_for(model)
        created = cache_creation_tokens or 0
        read = cache_read_tokens or 0
        uncached = max(0, input_tokens - created - read)
        return (
            uncached * input_rate
            + created * input_rate * self.cache_write_multiplier
            + read * input_rate * self.cache_read_multiplier
            + output_tokens * output_rate
        ) / 1_000_000


class TraceSink(Protocol):
    """Destination for completed LLM call traces."""

    def record(
        self,
        context: TraceContext,
        input: TraceInput,
        output: TraceOutput,
        latency_ms: float,
        *,
        status: TraceStatus = "SUCCESS",
        error_message: str | None = None,
    ) -> Any:
        ...


def start_trace(
    span_name: str,
    feature: str,
    *,
    session_id: str | None = None,
    parent_trace_id: str | None = None,
) -> TraceContext:
    return TraceContext(
        trace_id=str(uuid.uuid4()),
        feature=feature,
        span_name=span_name,
        session_id=session_id,
        parent_trace_id=parent_trace_id,
    )


def hash_prompt(prompt: str) -> str:
    """Short stable digest used to group traces by prompt."""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


class TraceStore:
    """In-memory trace storage."""

    def __init__(self, *, cost_model: CostModel | None = None) -> None:
        self._records: dict[str, TraceRecord] = {}
        self._cost_model = cost_model or CostModel()

    def record(
        self,
        context: TraceContext,
        input: TraceInput,
        output: TraceOutput,
        latency_ms: float,
        *,
        status: TraceStatus = "SUCCESS",
        error_message: str | None = None,
    ) -> TraceRecord:
        cost = output.estimated_cost_usd
        if cost is None:
            cost = self._cost_model.estimate_cost(
                input.model,
                output.input_tokens,
                output.output_tokens,
                output.cache_creation_tokens,
                output.cache_read_tokens,
            )
        record = TraceRecord(
            trace_id=context.trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            feature=context.feature,
            span_name=context.span_name,
            model=input.model,
            prompt_hash=hash_prompt(input.system_prompt),
            response=output.response,
            skills=list(input.skills),
            input_tokens=output.input_tokens,
            output_tokens=output.output_tokens,
            cache_creation_tokens=output.cache_creation_tokens or 0,
            cache_read_tokens=output.cache_read_tokens or 0,
            estimated_cost_usd=cost,
            latency_ms=latency_ms,
            status=status,
            error_message=error_message,
            session_id=context.session_id,
            parent_trace_id=context.parent_trace_id,
        )
        self._records[record.trace_id] = record
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate request, latency, token and cost metrics."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "error_count": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_cache_read_tokens": 0,
                "total_estimated_cost_usd": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))

        return {
            "total_requests": total,
            "error_count": sum(1 for record in records if record.status != "SUCCESS"),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_cache_read_tokens": sum(record.cache_read_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
        }


def record_trace_safely(
    sink: TraceSink | None,
    context: TraceContext,
    input: TraceInput,
    output: TraceOutput,
    latency_ms: float,
    *,
    status: TraceStatus = "SUCCESS",
    error_message: str | None = None,
) -> None:
    """Hand a trace to `sink`; sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        sink.record(
            context,
            input,
            output,
            latency_ms,
            status=status,
            error_message=error_message,
        )
    except Exception:
        logger.exception("Failed to record trace %s", context.trace_id)


class Timer:
    """Context timer reporting elapsed wall time in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
