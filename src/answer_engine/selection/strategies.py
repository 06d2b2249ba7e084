"""Skill selection strategies with a uniform outcome contract.

Each strategy turns `(questions, candidates)` into a `StrategyOutcome`. The
selector walks an ordered list of strategies and keeps the first outcome that
succeeded with at least one match, so the fallback chain is explicit data
rather than nested exception handling.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from answer_engine.config import EngineConfig
from answer_engine.errors import AnswerEngineError, LLMTimeout, ProviderFailure
from answer_engine.execution.parser import parse_json_content
from answer_engine.llm.client import CompletionClient
from answer_engine.resilience.circuit_breaker import CircuitBreaker
from answer_engine.selection.scope import (
    confidence_for_score,
    rank_by_scope,
    ranking_key,
)
from answer_engine.types import Completion, ConfidenceTier, KnowledgeItem, RankedMatch

logger = logging.getLogger(__name__)

_CONFIDENCE_SCORES: dict[str, float] = {"high": 0.9, "medium": 0.6, "low": 0.3}

_MATCHING_SYSTEM_PROMPT = """
You match questions to knowledge skills using each skill's scope definition.

Rules:
1) Only return skill ids that appear in the provided skill list.
2) Prefer skills whose "covers" scope directly answers the questions.
3) Never match a skill whose "not included" scope contains the topic asked.
4) Rate each match with confidence "high", "medium" or "low".

Return ONLY a JSON object of the form:
{"matches": [{"skillId": "...", "reason": "...", "confidence": "high"}]}
""".strip()


@dataclass(slots=True)
class SelectionRequest:
    """Inputs shared by every strategy in the chain."""

    questions: list[str]
    candidates: list[KnowledgeItem]
    max_skills: int
    context_skill_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StrategyOutcome:
    """Result-or-error from a single strategy."""

    strategy: str
    matches: list[RankedMatch] = field(default_factory=list)
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.matches)


class SelectionStrategy(ABC):
    """Strategy interface used by `SkillSelector`."""

    name: str = "strategy"

    @abstractmethod
    async def select(self, request: SelectionRequest) -> StrategyOutcome:
        """Return ranked matches, or an outcome carrying the error."""


class SemanticStrategy(SelectionStrategy):
    """Asks the LLM which skills fit the questions, based on scope summaries.

    The call is bounded by the batch timeout and goes through the circuit
    breaker, so a hanging or unavailable provider turns into an error outcome
    and the chain falls back to the local strategies.
    """

    name = "semantic"

    def __init__(
        self,
        client: CompletionClient,
        *,
        config: EngineConfig | None = None,
        breaker: CircuitBreaker | None = None,
        model_speed: str = "fast",
    ) -> None:
        self.client = client
        self.config = config or EngineConfig()
        self.breaker = breaker or CircuitBreaker.from_config(self.config.breaker)
        self.model_speed = model_speed

    async def select(self, request: SelectionRequest) -> StrategyOutcome:
        try:
            matches = await self._match(request)
        except Exception as exc:
            logger.warning("Semantic skill matching failed: %s", exc)
            return StrategyOutcome(strategy=self.name, error=exc)
        return StrategyOutcome(strategy=self.name, matches=matches)

    async def _match(self, request: SelectionRequest) -> list[RankedMatch]:
        completion = await self.breaker.call_async(
            self._complete,
            model=self.config.model_for(self.model_speed),
            user_message=render_matching_request(request),
            max_output_tokens=self.config.max_output_tokens_for(self.model_speed),
        )
        payload = parse_json_content(completion.text)
        entries = payload.get("matches", []) if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            raise ValueError("Skill matching response has no matches array")

        by_id = {item.id: item for item in request.candidates}
        matches: list[RankedMatch] = []
        seen: set[str] = set()
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            skill_id = str(entry.get("skillId", ""))
            item = by_id.get(skill_id)
            if item is None:
                logger.warning("Semantic matcher returned unknown skill id %r", skill_id)
                continue
            if skill_id in seen:
                continue
            seen.add(skill_id)
            confidence = _confidence_tier(entry.get("confidence"))
            reason = str(entry.get("reason") or "Matched by LLM")
            matches.append(
                RankedMatch(
                    skill_id=item.id,
                    title=item.title,
                    score=_CONFIDENCE_SCORES[confidence],
                    confidence=confidence,
                    reason=reason,
                    matched_terms=[reason.splitlines()[0][:50]],
                    strategy=self.name,
                )
            )
        return sorted(matches, key=ranking_key)[: request.max_skills]

    async def _complete(self, *, model: str, user_message: str, max_output_tokens: int) -> Completion:
        timeout = self.config.batch.timeout_seconds
        try:
            return await asyncio.wait_for(
                self.client.complete(
                    model=model,
                    system=_MATCHING_SYSTEM_PROMPT,
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
            raise ProviderFailure(f"Skill matching call failed: {exc}") from exc


class ContextRerankStrategy(SelectionStrategy):
    """Prefers skills that were already used earlier in the same thread.

    Previously used skills get `boost` over a neutral baseline of 1. Only
    boosted skills are returned; without prior context the strategy yields
    nothing and the chain moves on.
    """

    name = "context_rerank"

    def __init__(self, boost: float = 10.0) -> None:
        self.boost = boost

    async def select(self, request: SelectionRequest) -> StrategyOutcome:
        previous = set(request.context_skill_ids)
        if not previous:
            return StrategyOutcome(strategy=self.name)

        scored = [
            (self.boost if item.id in previous else 1.0, item)
            for item in request.candidates
        ]
        scored.sort(key=lambda pair: (-pair[0], pair[1].title))

        matches = [
            RankedMatch(
                skill_id=item.id,
                title=item.title,
                score=boosted / self.boost,
                confidence=confidence_for_score(boosted / self.boost),
                reason="Used earlier in this conversation",
                matched_terms=[],
                strategy=self.name,
            )
            for boosted, item in scored
            if boosted > 1.0
        ]
        return StrategyOutcome(strategy=self.name, matches=matches[: request.max_skills])


class KeywordScopeStrategy(SelectionStrategy):
    """Scope-definition scoring; needs no external calls."""

    name = "keyword"

    def __init__(self, min_score: float = 0.1) -> None:
        self.min_score = min_score

    async def select(self, request: SelectionRequest) -> StrategyOutcome:
        ranked = rank_by_scope(request.questions, request.candidates, strategy=self.name)
        matches = [match for match in ranked if match.score >= self.min_score]
        return StrategyOutcome(strategy=self.name, matches=matches[: request.max_skills])


def render_matching_request(request: SelectionRequest) -> str:
    skills: list[dict[str, Any]] = []
    for item in request.candidates:
        scope = item.scope_definition
        skills.append(
            {
                "id": item.id,
                "title": item.title,
                "covers": scope.covers if scope else "",
                "futureAdditions": scope.future_additions if scope else [],
                "notIncluded": scope.not_included if scope else [],
            }
        )
    questions = "\n".join(f"- {question.strip()}" for question in request.questions)
    return (
        "These are questions to answer. Match them to skills that can provide "
        f"relevant information. Return at most {request.max_skills} matches.\n\n"
        f"Skills:\n{json.dumps(skills, ensure_ascii=False, indent=2)}\n\n"
        f"Questions:\n{questions}"
    )


def _confidence_tier(value: Any) -> ConfidenceTier:
    tier = str(value or "").strip().lower()
    if tier in _CONFIDENCE_SCORES:
        return tier  # type: ignore[return-value]
    return "low"
