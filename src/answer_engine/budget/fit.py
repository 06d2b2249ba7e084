"""Pre-run context fit estimate for UI feedback."""

from __future__ import annotations

from dataclasses import dataclass, field

from answer_engine.budget.tokens import estimate_tokens
from answer_engine.config import EngineConfig
from answer_engine.errors import InvalidInput
from answer_engine.types import KnowledgeItem

TOKENS_PER_QUESTION = 50
SYSTEM_PROMPT_TOKENS = 2000
# Scope-based runs rarely inject more than this many skills.
TYPICAL_SELECTED_SKILLS = 8


@dataclass(slots=True)
class ContextFit:
    fits: bool
    skill_count: int
    total_tokens: int
    max_tokens: int
    available_tokens: int
    utilization_percent: int
    suggested_batch_size: int
    breakdown: dict[str, int] = field(default_factory=dict)


def estimate_context_fit(
    question_count: int,
    *,
    skills: list[KnowledgeItem] | None = None,
    candidate_count: int | None = None,
    file_context_tokens: int = 0,
    model_speed: str = "quality",
    config: EngineConfig | None = None,
) -> ContextFit:
    """Estimate whether a run will fit the input window.

    When `skills` is given (pre-approved selection) their real content is
    measured. Otherwise a scope-based guess of `min(8, candidate_count)`
    skills at the configured average size is used.
    """

    config = config or EngineConfig()
    if question_count < 1:
        raise InvalidInput("question_count must be at least 1")

    if skills:
        skill_count = len(skills)
        skill_tokens = estimate_tokens("\n".join(skill.content for skill in skills))
    else:
        skill_count = min(TYPICAL_SELECTED_SKILLS, candidate_count or 0)
        skill_tokens = skill_count * config.selection.avg_tokens_per_skill

    question_tokens = question_count * TOKENS_PER_QUESTION
    total = skill_tokens + question_tokens + file_context_tokens + SYSTEM_PROMPT_TOKENS

    max_tokens = config.model.input_context_tokens[model_speed]
    available = config.input_limit_for(model_speed)

    return ContextFit(
        fits=total <= available,
        skill_count=skill_count,
        total_tokens=total,
        max_tokens=max_tokens,
        available_tokens=available,
        utilization_percent=min(100, round(total / max_tokens * 100)),
        suggested_batch_size=min(config.effective_batch_size(model_speed), question_count),
        breakdown={
            "skill_tokens": skill_tokens,
            "question_tokens": question_tokens,
            "file_context_tokens": file_context_tokens,
            "system_prompt_tokens": SYSTEM_PROMPT_TOKENS,
        },
    )
