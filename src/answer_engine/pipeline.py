"""End-to-end answering: select skills, batch questions, execute in order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, cast

from answer_engine.batching.composer import compose, validate_question_indices
from answer_engine.config import EngineConfig
from answer_engine.errors import AnswerEngineError, InvalidInput
from answer_engine.execution.engine import BatchExecutionEngine
from answer_engine.obs.tracing import start_trace
from answer_engine.prompts.composition import (
    BlockResolver,
    PromptComposition,
    RuntimeContext,
    assemble_system_prompt,
)
from answer_engine.selection.selector import SkillSelector
from answer_engine.types import (
    AnswerRecord,
    ExecuteSelection,
    KnowledgeItem,
    Question,
    RankedMatch,
    UsageInfo,
)

logger = logging.getLogger(__name__)

BatchStatus = Literal["COMPLETED", "ERROR"]


@dataclass(slots=True)
class BatchReport:
    number: int
    question_count: int
    processed_count: int
    status: BatchStatus
    missing_indices: list[int] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class PipelineResult:
    records: list[AnswerRecord]
    batches: list[BatchReport]
    selected_skills: list[RankedMatch]
    selection_strategy: str
    usage: UsageInfo | None = None

    @property
    def failed_batches(self) -> list[BatchReport]:
        return [report for report in self.batches if report.status == "ERROR"]


class AnsweringPipeline:
    """Wires selection, batching and execution for a multi-question request.

    Batches run one after another. With `continue_on_error` a failing batch
    is reported and the remaining batches still run; otherwise the first
    failure propagates.
    """

    def __init__(
        self,
        selector: SkillSelector,
        engine: BatchExecutionEngine,
        resolver: BlockResolver,
        *,
        config: EngineConfig | None = None,
    ) -> None:
        self.selector = selector
        self.engine = engine
        self.resolver = resolver
        self.config = config or engine.config

    async def answer(
        self,
        questions: list[Question],
        candidates: list[KnowledgeItem],
        composition: PromptComposition,
        *,
        model_speed: str = "quality",
        approved_skill_ids: list[str] | None = None,
        context_skill_ids: list[str] | None = None,
        file_context: str | None = None,
        batch_size: int | None = None,
        runtime: RuntimeContext | None = None,
        continue_on_error: bool = False,
    ) -> PipelineResult:
        if not questions:
            raise InvalidInput("At least one question is required")
        validate_question_indices(questions)

        size = self.config.effective_batch_size(model_speed)
        if batch_size is not None:
            if batch_size < 1:
                raise InvalidInput("batch_size must be at least 1")
            size = min(batch_size, size)

        selected = await self.selector.select(
            [question.text for question in questions],
            candidates,
            mode="execute",
            approved_skill_ids=approved_skill_ids,
            context_skill_ids=context_skill_ids,
        )
        selection = cast(ExecuteSelection, selected)
        by_id = {item.id: item for item in candidates}
        skills = [by_id[match.skill_id] for match in selection.selected_skills]

        assembled = assemble_system_prompt(composition, self.resolver, runtime)
        batches = compose(questions, size)
        parent = start_trace("answer_questions", composition.id)
        logger.info(
            "Answering %d questions in %d batches with %d skills (%s)",
            len(questions),
            len(batches),
            len(skills),
            selection.strategy,
        )

        records: list[AnswerRecord] = []
        reports: list[BatchReport] = []
        usages: list[UsageInfo] = []
        for batch in batches:
            try:
                result = await self.engine.execute_batch(
                    batch,
                    assembled,
                    skills,
                    model_speed=model_speed,
                    file_context=file_context,
                    trace_context=start_trace(
                        f"batch_{batch.number}",
                        composition.id,
                        parent_trace_id=parent.trace_id,
                    ),
                )
            except AnswerEngineError as exc:
                if not continue_on_error:
                    raise
                logger.error("Batch %d failed: %s", batch.number, exc)
                reports.append(
                    BatchReport(
                        number=batch.number,
                        question_count=len(batch),
                        processed_count=0,
                        status="ERROR",
                        missing_indices=batch.indices,
                        error=str(exc),
                    )
                )
                continue

            records.extend(result.records)
            usages.append(result.usage)
            reports.append(
                BatchReport(
                    number=batch.number,
                    question_count=len(batch),
                    processed_count=result.processed_count,
                    status="COMPLETED",
                    missing_indices=result.missing_indices,
                )
            )

        records.sort(key=lambda record: record.question_index)
        return PipelineResult(
            records=records,
            batches=reports,
            selected_skills=selection.selected_skills,
            selection_strategy=selection.strategy,
            usage=aggregate_usage(usages),
        )


def aggregate_usage(usages: list[UsageInfo]) -> UsageInfo | None:
    """Sum usage across calls; cache counters stay None if no call had them."""
    if not usages:
        return None

    def _sum_optional(values: list[int | None]) -> int | None:
        present = [value for value in values if value is not None]
        return sum(present) if present else None

    return UsageInfo(
        input_tokens=sum(usage.input_tokens for usage in usages),
        output_tokens=sum(usage.output_tokens for usage in usages),
        model=usages[-1].model,
        cache_creation_tokens=_sum_optional([usage.cache_creation_tokens for usage in usages]),
        cache_read_tokens=_sum_optional([usage.cache_read_tokens for usage in usages]),
    )
