"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

ConfidenceTier = Literal["high", "medium", "low"]
AnswerConfidence = Literal["High", "Medium", "Low"]


@dataclass(slots=True)
class ScopeDefinition:
    """Structured hints on what a knowledge item covers."""

    covers: str = ""
    future_additions: list[str] = field(default_factory=list)
    not_included: list[str] = field(default_factory=list)
    keywords: list[str] | None = None


@dataclass(slots=True)
class KnowledgeItem:
    """A titled unit of reference content ("skill")."""

    id: str
    title: str
    content: str
    scope_definition: ScopeDefinition | None = None


@dataclass(slots=True)
class Question:
    """A question to answer; `index` is the join key for batched answers."""

    index: int
    text: str
    context: str | None = None

    @property
    def prompt_text(self) -> str:
        if self.context:
            return f"Context: {self.context}\n\nQuestion: {self.text}"
        return self.text


@dataclass(slots=True)
class RankedMatch:
    """A scored candidate produced by a selection strategy."""

    skill_id: str
    title: str
    score: float
    confidence: ConfidenceTier
    reason: str
    matched_terms: list[str] = field(default_factory=list)
    strategy: str = "keyword"
    recommended: bool = False

    @property
    def match_percentage(self) -> int:
        return round(self.score * 100)


@dataclass(slots=True)
class SelectionCoverage:
    recommended_count: int
    total_skills: int
    avg_score: float


@dataclass(slots=True)
class StrategyAttempt:
    """Outcome summary of one tier of the selection chain."""

    strategy: str
    match_count: int
    error: str | None = None


@dataclass(slots=True)
class PreviewSelection:
    recommendations: list[RankedMatch]
    all_skills: list[RankedMatch]
    coverage: SelectionCoverage
    strategy: str
    attempts: list[StrategyAttempt] = field(default_factory=list)
    mode: Literal["preview"] = "preview"


@dataclass(slots=True)
class ExecuteSelection:
    selected_skills: list[RankedMatch]
    strategy: str
    attempts: list[StrategyAttempt] = field(default_factory=list)
    mode: Literal["execute"] = "execute"


@dataclass(slots=True)
class ForecastSelection:
    estimated_selected_skills: int
    estimated_tokens: int
    coverage_percent: int
    mode: Literal["forecast"] = "forecast"


SelectionResult = Union[PreviewSelection, ExecuteSelection, ForecastSelection]


@dataclass(slots=True)
class Batch:
    """An ordered, contiguous slice of the question list."""

    number: int
    questions: tuple[Question, ...]

    @property
    def indices(self) -> list[int]:
        return [question.index for question in self.questions]

    def __len__(self) -> int:
        return len(self.questions)


@dataclass(frozen=True, slots=True)
class UsageInfo:
    """Token counters reported for one LLM call."""

    input_tokens: int
    output_tokens: int
    model: str
    cache_creation_tokens: int | None = None
    cache_read_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class Completion:
    """Text plus usage returned by the completion collaborator."""

    text: str
    usage: UsageInfo


@dataclass(frozen=True, slots=True)
class SystemSegment:
    text: str
    cacheable: bool


SystemContent = Union[str, list[SystemSegment]]


@dataclass(frozen=True, slots=True)
class Transparency:
    """Audit record of the prompt that produced a set of answers."""

    system_prompt: str
    composition_id: str
    block_ids: tuple[str, ...]
    runtime_block_ids: tuple[str, ...]
    assembled_at: str


@dataclass(frozen=True, slots=True)
class AnswerRecord:
    question_index: int
    response: str
    confidence: AnswerConfidence
    sources: str
    reasoning: str
    inference: str
    remarks: str
    transparency: Transparency
    tokens_used: int | None = None
    usage: UsageInfo | None = None
