"""Single-batch execution: preflight, guarded LLM call, parse, package."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from answer_engine.budget.tokens import estimate_tokens, truncate_to_tokens
from answer_engine.config import EngineConfig
from answer_engine.errors import (
    AnswerEngineError,
    ContextOverflow,
    EmptyResponse,
    InvalidInput,
    LLMTimeout,
    ProviderFailure,
)
from answer_engine.execution.parser import AnswerItem, coerce_answer_items, parse_json_content
from answer_engine.llm.client import CompletionClient
from answer_engine.obs.tracing import (
    Timer,
    TraceContext,
    TraceInput,
    TraceOutput,
    TraceSink,
    record_trace_safely,
    start_trace,
)
from answer_engine.obs.transparency import (
    TransparencyRecorder,
    build_records,
    cache_metrics,
    format_cache_metrics,
)
from answer_engine.prompts.cache import CacheablePromptBuilder, is_cached, join_system_content
from answer_engine.prompts.composition import AssembledPrompt
from answer_engine.prompts.sections import (
    render_batch_instruction,
    render_file_context,
    render_skills_context,
)
from answer_engine.resilience.circuit_breaker import CircuitBreaker
from answer_engine.types import AnswerRecord, Batch, Completion, KnowledgeItem, SystemContent, UsageInfo

logger = logging.getLogger(__name__)

TRACE_FEATURE = "rfp_batch"


@dataclass(slots=True)
class BatchResult:
    """Answers produced by one LLM call, keyed by question index."""

    batch_number: int
    records: tuple[AnswerRecord, ...]
    usage: UsageInfo
    missing_indices: list[int] = field(default_factory=list)
    cached: bool = False

    @property
    def processed_count(self) -> int:
        return len(self.records)


@dataclass(slots=True)
class PreparedBatch:
    """Everything sent to the model for one batch, sized before the call."""

    model: str
    system: SystemContent
    user_message: str
    system_tokens: int
    user_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.system_tokens + self.user_tokens


class BatchExecutionEngine:
    """Answers one batch of questions with a single completion call.

    The circuit breaker is injected so several engines (and requests) can
    share one instance. There is no retry: every failure propagates to the
    caller after it has been counted by the breaker and traced.
    """

    def __init__(
        self,
        client: CompletionClient,
        breaker: CircuitBreaker,
        *,
        config: EngineConfig | None = None,
        prompt_builder: CacheablePromptBuilder | None = None,
        recorder: TransparencyRecorder | None = None,
        trace_sink: TraceSink | None = None,
    ) -> None:
        self.client = client
        self.breaker = breaker
        self.config = config or EngineConfig()
        self.prompt_builder = prompt_builder or CacheablePromptBuilder(self.config.cache)
        self.recorder = recorder or TransparencyRecorder()
        self.trace_sink = trace_sink

    def prepare(
        self,
        batch: Batch,
        system_prompt: str,
        candidate_content: Sequence[KnowledgeItem],
        *,
        model_speed: str = "quality",
        file_context: str | None = None,
    ) -> PreparedBatch:
        """Build the prompt and enforce the input budget.

        Raises:
            ContextOverflow: when the estimate exceeds the usable input window.
        """

        model = self.config.model_for(model_speed)
        if file_context:
            file_context = truncate_to_tokens(
                file_context, self.config.batch.max_file_context_tokens
            )

        context = "\n\n".join(
            part
            for part in (
                system_prompt,
                render_file_context(file_context),
                render_skills_context(candidate_content),
            )
            if part
        )
        user_message = render_batch_instruction(batch.questions)

        system_tokens = estimate_tokens(context)
        user_tokens = estimate_tokens(user_message)
        limit = self.config.input_limit_for(model_speed)
        if system_tokens + user_tokens > limit:
            raise ContextOverflow(
                total_tokens=system_tokens + user_tokens,
                limit=limit,
                system_tokens=system_tokens,
                user_tokens=user_tokens,
            )

        return PreparedBatch(
            model=model,
            system=self.prompt_builder.build(context, "", model),
            user_message=user_message,
            system_tokens=system_tokens,
            user_tokens=user_tokens,
        )

    async def execute_batch(
        self,
        batch: Batch,
        system_prompt: str | AssembledPrompt,
        candidate_content: Sequence[KnowledgeItem],
        *,
        model_speed: str = "quality",
        file_context: str | None = None,
        composition_id: str = "custom",
        block_ids: Sequence[str] = (),
        runtime_block_ids: Sequence[str] = (),
        trace_context: TraceContext | None = None,
    ) -> BatchResult:
        if not batch.questions:
            raise InvalidInput("Batch has no questions")

        if isinstance(system_prompt, AssembledPrompt):
            assembled = system_prompt
        else:
            assembled = AssembledPrompt(
                prompt=system_prompt,
                composition_id=composition_id,
                block_ids=list(block_ids),
                runtime_block_ids=list(runtime_block_ids),
            )

        prepared = self.prepare(
            batch,
            assembled.prompt,
            candidate_content,
            model_speed=model_speed,
            file_context=file_context,
        )
        logger.info(
            "Executing batch %d: %d questions, ~%d input tokens, model=%s",
            batch.number,
            len(batch),
            prepared.total_tokens,
            prepared.model,
        )

        context = trace_context or start_trace(f"batch_{batch.number}", TRACE_FEATURE)
        trace_input = TraceInput(
            model=prepared.model,
            system_prompt=join_system_content(prepared.system),
            user_message=prepared.user_message,
            skills=[{"id": item.id, "title": item.title} for item in candidate_content],
        )

        timer = Timer()
        try:
            with timer:
                completion = await self.breaker.call_async(
                    self._complete,
                    model=prepared.model,
                    system=prepared.system,
                    user_message=prepared.user_message,
                    max_output_tokens=self.config.max_output_tokens_for(model_speed),
                )
        except AnswerEngineError as exc:
            record_trace_safely(
                self.trace_sink,
                context,
                trace_input,
                TraceOutput(input_tokens=0, output_tokens=0),
                timer.elapsed_ms,
                status="TIMEOUT" if isinstance(exc, LLMTimeout) else "ERROR",
                error_message=str(exc),
            )
            raise

        usage = completion.usage
        record_trace_safely(
            self.trace_sink,
            context,
            trace_input,
            TraceOutput(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                response=completion.text,
                cache_creation_tokens=usage.cache_creation_tokens,
                cache_read_tokens=usage.cache_read_tokens,
            ),
            timer.elapsed_ms,
        )
        logger.info(
            "Batch %d usage: %s",
            batch.number,
            format_cache_metrics(cache_metrics(usage)),
        )

        parsed = parse_json_content(completion.text)
        items = coerce_answer_items(
            parsed, strict=self.config.answers.strict, raw=completion.text
        )
        kept, missing = self._match_to_batch(batch, items)

        transparency = self.recorder.build_transparency(assembled)
        return BatchResult(
            batch_number=batch.number,
            records=build_records(kept, transparency, usage, len(batch)),
            usage=usage,
            missing_indices=missing,
            cached=is_cached(prepared.system),
        )

    async def _complete(
        self,
        *,
        model: str,
        system: SystemContent,
        user_message: str,
        max_output_tokens: int,
    ) -> Completion:
        timeout = self.config.batch.timeout_seconds
        try:
            completion = await asyncio.wait_for(
                self.client.complete(
                    model=model,
                    system=system,
                    user_message=user_message,
                    max_output_tokens=max_output_tokens,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LLMTimeout(timeout) from exc
        except AnswerEngineError:
            raise
        except Exception as exc:
            raise ProviderFailure(f"LLM provider call failed: {exc}") from exc

        if not completion.text or not completion.text.strip():
            raise EmptyResponse("LLM returned an empty response")
        return completion

    @staticmethod
    def _match_to_batch(
        batch: Batch, items: list[AnswerItem]
    ) -> tuple[list[AnswerItem], list[int]]:
        expected = set(batch.indices)
        kept: dict[int, AnswerItem] = {}
        for item in items:
            if item.question_index not in expected:
                logger.warning(
                    "Dropping answer for question %d: not part of batch %d",
                    item.question_index,
                    batch.number,
                )
                continue
            if item.question_index in kept:
                logger.warning(
                    "Duplicate answer for question %d in batch %d; keeping the first",
                    item.question_index,
                    batch.number,
                )
                continue
            kept[item.question_index] = item

        missing = [index for index in batch.indices if index not in kept]
        if missing:
            logger.warning(
                "Batch %d returned no answer for questions %s",
                batch.number,
                ", ".join(str(index) for index in missing),
            )
        return list(kept.values()), missing
