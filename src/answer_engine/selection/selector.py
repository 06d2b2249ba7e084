"""Skill selection orchestrator with preview/execute/forecast modes."""

from __future__ import annotations

import logging
from typing import Literal

from answer_engine.config import EngineConfig
from answer_engine.errors import InvalidInput, NoCandidates
from answer_engine.llm.client import CompletionClient
from answer_engine.resilience.circuit_breaker import CircuitBreaker
from answer_engine.selection.scope import rank_by_scope, ranking_key
from answer_engine.selection.strategies import (
    ContextRerankStrategy,
    KeywordScopeStrategy,
    SelectionRequest,
    SelectionStrategy,
    SemanticStrategy,
    StrategyOutcome,
)
from answer_engine.types import (
    ExecuteSelection,
    ForecastSelection,
    KnowledgeItem,
    PreviewSelection,
    RankedMatch,
    SelectionCoverage,
    SelectionResult,
    StrategyAttempt,
)

logger = logging.getLogger(__name__)

SelectionMode = Literal["preview", "execute", "forecast"]


class SkillSelector:
    """Picks the knowledge items to inject into answering prompts.

    Strategies are tried in order (semantic -> context rerank -> keyword by
    default) and the first one that produces matches serves the result. The
    last strategy is terminal: its outcome is used even when empty. Which tier
    served is reported on the result and logged.
    """

    def __init__(
        self,
        strategies: list[SelectionStrategy],
        *,
        config: EngineConfig | None = None,
    ) -> None:
        if not strategies:
            raise ValueError("SkillSelector needs at least one strategy")
        self.strategies = strategies
        self.config = config or EngineConfig()

    @classmethod
    def default(
        cls,
        client: CompletionClient | None,
        *,
        config: EngineConfig | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> "SkillSelector":
        """Semantic, context rerank and keyword tiers.

        Pass the engine's `breaker` so that skill matching and batch answering
        share one view of provider health.
        """
        config = config or EngineConfig()
        strategies: list[SelectionStrategy] = []
        if client is not None:
            strategies.append(SemanticStrategy(client, config=config, breaker=breaker))
        strategies.append(ContextRerankStrategy(boost=config.selection.rerank_boost))
        strategies.append(KeywordScopeStrategy(min_score=config.selection.min_score))
        return cls(strategies, config=config)

    async def select(
        self,
        questions: list[str],
        candidates: list[KnowledgeItem],
        mode: SelectionMode = "execute",
        *,
        max_skills: int | None = None,
        approved_skill_ids: list[str] | None = None,
        context_skill_ids: list[str] | None = None,
    ) -> SelectionResult:
        limit = self.config.selection.max_skills if max_skills is None else max_skills
        self._validate(questions, candidates, mode, limit)

        if mode == "forecast":
            return self.forecast(questions, candidates, max_skills=limit)

        if mode == "execute" and approved_skill_ids:
            return self._approved(questions, candidates, approved_skill_ids, limit)

        request = SelectionRequest(
            questions=questions,
            candidates=candidates,
            max_skills=limit,
            context_skill_ids=list(context_skill_ids or []),
        )
        outcome, attempts = await self._run_chain(request)
        matches = sorted(outcome.matches, key=ranking_key)[:limit]

        if mode == "execute":
            return ExecuteSelection(
                selected_skills=matches,
                strategy=outcome.strategy,
                attempts=attempts,
            )

        all_skills = rank_by_scope(questions, candidates)
        recommended_ids = {match.skill_id for match in matches}
        for match in all_skills:
            match.recommended = match.skill_id in recommended_ids
        avg_score = sum(match.score for match in matches) / len(matches) if matches else 0.0
        return PreviewSelection(
            recommendations=matches,
            all_skills=all_skills,
            coverage=SelectionCoverage(
                recommended_count=len(matches),
                total_skills=len(all_skills),
                avg_score=round(avg_score, 2),
            ),
            strategy=outcome.strategy,
            attempts=attempts,
        )

    def forecast(
        self,
        questions: list[str],
        candidates: list[KnowledgeItem],
        *,
        max_skills: int | None = None,
    ) -> ForecastSelection:
        """Cheap, no-LLM estimate of selection size and token cost."""
        limit = self.config.selection.max_skills if max_skills is None else max_skills
        settings = self.config.selection
        selected = min(limit, len(candidates))
        estimated_tokens = (
            selected * settings.avg_tokens_per_skill
            + len(questions) * settings.tokens_per_question
            + settings.forecast_overhead_tokens
        )
        return ForecastSelection(
            estimated_selected_skills=selected,
            estimated_tokens=estimated_tokens,
            coverage_percent=round(selected / len(candidates) * 100) if candidates else 0,
        )

    async def _run_chain(
        self, request: SelectionRequest
    ) -> tuple[StrategyOutcome, list[StrategyAttempt]]:
        attempts: list[StrategyAttempt] = []
        outcome = StrategyOutcome(strategy=self.strategies[-1].name)
        for position, strategy in enumerate(self.strategies):
            outcome = await strategy.select(request)
            attempts.append(
                StrategyAttempt(
                    strategy=outcome.strategy,
                    match_count=len(outcome.matches),
                    error=str(outcome.error) if outcome.error is not None else None,
                )
            )
            if outcome.succeeded:
                break
            if position < len(self.strategies) - 1:
                logger.warning(
                    "Skill selection strategy %s produced no matches%s; falling back",
                    outcome.strategy,
                    f" ({outcome.error})" if outcome.error is not None else "",
                )

        logger.info(
            "Skill selection served by %s with %d matches",
            outcome.strategy,
            len(outcome.matches),
        )
        return outcome, attempts

    def _approved(
        self,
        questions: list[str],
        candidates: list[KnowledgeItem],
        approved_skill_ids: list[str],
        limit: int,
    ) -> ExecuteSelection:
        approved = set(approved_skill_ids)
        known = {item.id for item in candidates}
        unknown = sorted(approved - known)
        if unknown:
            logger.warning("Ignoring unknown approved skill ids: %s", ", ".join(unknown))

        ranked = rank_by_scope(questions, candidates, strategy="approved")
        selected: list[RankedMatch] = []
        for match in ranked:
            if match.skill_id in approved:
                match.reason = "Approved by reviewer"
                selected.append(match)
        return ExecuteSelection(selected_skills=selected[:limit], strategy="approved")

    @staticmethod
    def _validate(
        questions: list[str],
        candidates: list[KnowledgeItem],
        mode: str,
        limit: int,
    ) -> None:
        if mode not in ("preview", "execute", "forecast"):
            raise InvalidInput(f"Unknown selection mode: {mode}")
        if not questions or not any(question.strip() for question in questions):
            raise InvalidInput("At least one question is required")
        if limit < 1:
            raise InvalidInput("max_skills must be at least 1")
        if not candidates:
            raise NoCandidates("No skills available in the selected library")
        ids = [item.id for item in candidates]
        if len(ids) != len(set(ids)):
            raise InvalidInput("Candidate skill ids must be unique")
