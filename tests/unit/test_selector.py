import asyncio
import json

import pytest

from answer_engine.config import BatchConfig, EngineConfig, SelectionConfig
from answer_engine.errors import InvalidInput, NoCandidates
from answer_engine.resilience.circuit_breaker import CircuitBreaker
from answer_engine.selection.selector import SkillSelector
from answer_engine.selection.strategies import (
    ContextRerankStrategy,
    KeywordScopeStrategy,
    SelectionRequest,
    SemanticStrategy,
)
from answer_engine.types import (
    Completion,
    ExecuteSelection,
    ForecastSelection,
    KnowledgeItem,
    PreviewSelection,
    ScopeDefinition,
    UsageInfo,
)


class _ScriptedClient:
    def __init__(self, text: str | None = None, error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[dict[str, object]] = []

    async def complete(self, *, model, system, user_message, max_output_tokens) -> Completion:
        self.calls.append({"model": model, "user_message": user_message})
        if self.error is not None:
            raise self.error
        return Completion(
            text=self.text or "",
            usage=UsageInfo(input_tokens=10, output_tokens=5, model=model),
        )


def _candidates() -> list[KnowledgeItem]:
    return [
        KnowledgeItem(
            id="sso",
            title="Single Sign-On",
            content="SAML and OIDC are supported.",
            scope_definition=ScopeDefinition(covers="sso, saml, identity provider"),
        ),
        KnowledgeItem(
            id="billing",
            title="Billing",
            content="Invoices are issued monthly.",
            scope_definition=ScopeDefinition(covers="billing, invoicing"),
        ),
        KnowledgeItem(
            id="encryption",
            title="Encryption",
            content="AES-256 at rest.",
            scope_definition=ScopeDefinition(covers="encryption, key management"),
        ),
        KnowledgeItem(id="misc", title="Company Overview", content="Founded in 2015."),
    ]


def test_execute_uses_semantic_matches_when_available() -> None:
    client = _ScriptedClient(
        json.dumps(
            {
                "matches": [
                    {"skillId": "billing", "reason": "Invoices", "confidence": "high"},
                    {"skillId": "unknown", "reason": "Hallucinated", "confidence": "high"},
                    {"skillId": "sso", "reason": "Identity", "confidence": "low"},
                ]
            }
        )
    )
    selector = SkillSelector.default(client)

    result = asyncio.run(selector.select(["How are invoices sent?"], _candidates()))

    assert isinstance(result, ExecuteSelection)
    assert result.strategy == "semantic"
    assert [match.skill_id for match in result.selected_skills] == ["billing", "sso"]
    assert result.selected_skills[0].score == 0.9
    assert result.selected_skills[1].confidence == "low"
    assert len(client.calls) == 1
    assert client.calls[0]["model"] == EngineConfig().model_for("fast")


def test_semantic_failure_falls_back_to_context_rerank() -> None:
    selector = SkillSelector.default(_ScriptedClient(error=RuntimeError("provider down")))

    result = asyncio.run(
        selector.select(
            ["How do you bill customers?"],
            _candidates(),
            context_skill_ids=["sso"],
        )
    )

    assert isinstance(result, ExecuteSelection)
    assert result.strategy == "context_rerank"
    assert [match.skill_id for match in result.selected_skills] == ["sso"]
    assert result.selected_skills[0].score == 1.0
    assert [attempt.strategy for attempt in result.attempts] == ["semantic", "context_rerank"]
    assert "provider down" in (result.attempts[0].error or "")


def test_keyword_tier_serves_without_client_or_context() -> None:
    selector = SkillSelector.default(None)

    result = asyncio.run(selector.select(["Do you support SSO via SAML?"], _candidates()))

    assert isinstance(result, ExecuteSelection)
    assert result.strategy == "keyword"
    assert [match.skill_id for match in result.selected_skills] == ["sso"]
    assert [attempt.strategy for attempt in result.attempts] == ["context_rerank", "keyword"]


def test_unparseable_semantic_reply_falls_through_to_keyword() -> None:
    selector = SkillSelector.default(_ScriptedClient("I cannot help with that."))

    result = asyncio.run(selector.select(["How is encryption handled?"], _candidates()))

    assert isinstance(result, ExecuteSelection)
    assert result.strategy == "keyword"
    assert result.selected_skills[0].skill_id == "encryption"


def test_max_skills_caps_execute_and_preview() -> None:
    selector = SkillSelector([KeywordScopeStrategy(min_score=0.0)])
    questions = ["SSO, billing and encryption questions"]

    executed = asyncio.run(selector.select(questions, _candidates(), max_skills=2))
    previewed = asyncio.run(selector.select(questions, _candidates(), "preview", max_skills=2))

    assert isinstance(executed, ExecuteSelection)
    assert len(executed.selected_skills) == 2
    assert isinstance(previewed, PreviewSelection)
    assert len(previewed.recommendations) == 2
    assert len(previewed.all_skills) == 4
    assert previewed.coverage.recommended_count == 2
    assert previewed.coverage.total_skills == 4


def test_preview_results_are_sorted_with_title_tie_break() -> None:
    candidates = [
        KnowledgeItem(
            id=f"id-{title}",
            title=title,
            content="",
            scope_definition=ScopeDefinition(covers="backups"),
        )
        for title in ("Zulu", "Alpha", "Mike")
    ]
    selector = SkillSelector.default(None)

    result = asyncio.run(selector.select(["Describe backups"], candidates, "preview"))

    assert isinstance(result, PreviewSelection)
    assert [match.title for match in result.recommendations] == ["Alpha", "Mike", "Zulu"]
    assert result.coverage.avg_score == 0.7


def test_forecast_never_calls_the_llm() -> None:
    client = _ScriptedClient(error=AssertionError("should not be called"))
    selector = SkillSelector.default(client)

    result = asyncio.run(
        selector.select(["q1", "q2", "q3"], _candidates(), "forecast", max_skills=3)
    )

    assert isinstance(result, ForecastSelection)
    assert result.estimated_selected_skills == 3
    assert result.estimated_tokens == 3 * 3000 + 3 * 200 + 500
    assert result.coverage_percent == 75
    assert client.calls == []


def test_approved_ids_bypass_selection() -> None:
    client = _ScriptedClient(error=AssertionError("should not be called"))
    selector = SkillSelector.default(client)

    result = asyncio.run(
        selector.select(
            ["How are invoices sent?"],
            _candidates(),
            approved_skill_ids=["misc", "billing", "ghost"],
        )
    )

    assert isinstance(result, ExecuteSelection)
    assert result.strategy == "approved"
    assert [match.skill_id for match in result.selected_skills] == ["billing", "misc"]
    assert client.calls == []


def test_selector_rejects_invalid_requests() -> None:
    selector = SkillSelector.default(None)

    with pytest.raises(InvalidInput):
        asyncio.run(selector.select([], _candidates()))
    with pytest.raises(InvalidInput):
        asyncio.run(selector.select(["   "], _candidates()))
    with pytest.raises(NoCandidates):
        asyncio.run(selector.select(["Any question"], []))
    with pytest.raises(InvalidInput):
        asyncio.run(selector.select(["Any question"], _candidates(), max_skills=0))
    with pytest.raises(InvalidInput):
        asyncio.run(selector.select(["Any question"], _candidates() + _candidates()[:1]))
    with pytest.raises(InvalidInput):
        asyncio.run(selector.select(["Any question"], _candidates(), "explain"))  # type: ignore[arg-type]


def test_selector_requires_a_strategy() -> None:
    with pytest.raises(ValueError):
        SkillSelector([])


def test_default_max_skills_comes_from_config() -> None:
    config = EngineConfig(selection=SelectionConfig(max_skills=1, min_score=0.0))
    selector = SkillSelector([KeywordScopeStrategy(min_score=0.0)], config=config)

    result = asyncio.run(selector.select(["anything"], _candidates()))

    assert isinstance(result, ExecuteSelection)
    assert len(result.selected_skills) == 1


def test_context_rerank_without_history_yields_nothing() -> None:
    request = SelectionRequest(questions=["q"], candidates=_candidates(), max_skills=5)

    outcome = asyncio.run(ContextRerankStrategy().select(request))

    assert outcome.matches == []
    assert not outcome.succeeded


def test_semantic_strategy_accepts_bare_match_list() -> None:
    client = _ScriptedClient('[{"skillId": "encryption", "confidence": "Medium"}]')
    request = SelectionRequest(questions=["Is data encrypted?"], candidates=_candidates(), max_skills=5)

    outcome = asyncio.run(SemanticStrategy(client).select(request))

    assert outcome.succeeded
    assert outcome.matches[0].skill_id == "encryption"
    assert outcome.matches[0].score == 0.6
    assert outcome.matches[0].reason == "Matched by LLM"


class _HangingClient:
    def __init__(self) -> None:
        self.calls = 0

    async def complete(self, *, model, system, user_message, max_output_tokens) -> Completion:
        self.calls += 1
        await asyncio.sleep(60)
        raise AssertionError("unreachable")


def test_hanging_semantic_call_times_out_and_keyword_tier_serves() -> None:
    config = EngineConfig(batch=BatchConfig(timeout_seconds=0.05))
    breaker = CircuitBreaker(failure_threshold=3)
    selector = SkillSelector.default(_HangingClient(), config=config, breaker=breaker)

    result = asyncio.run(
        asyncio.wait_for(selector.select(["How are invoices sent?"], _candidates()), timeout=5.0)
    )

    assert isinstance(result, ExecuteSelection)
    assert result.strategy == "keyword"
    assert result.selected_skills[0].skill_id == "billing"
    assert "timed out" in (result.attempts[0].error or "")
    assert breaker.failures == 1


def test_open_breaker_skips_semantic_call() -> None:
    client = _ScriptedClient('{"matches": [{"skillId": "sso", "confidence": "high"}]}')
    breaker = CircuitBreaker(failure_threshold=1)
    breaker.record_failure()
    selector = SkillSelector.default(client, breaker=breaker)

    result = asyncio.run(selector.select(["Do you support SSO via SAML?"], _candidates()))

    assert client.calls == []
    assert result.strategy == "keyword"
    assert "temporarily unavailable" in (result.attempts[0].error or "")


def test_preview_flags_recommended_skills_in_full_ranking() -> None:
    client = _ScriptedClient('{"matches": [{"skillId": "billing", "confidence": "high"}]}')
    selector = SkillSelector.default(client)

    result = asyncio.run(selector.select(["How are invoices sent?"], _candidates(), "preview"))

    assert isinstance(result, PreviewSelection)
    flagged = {match.skill_id: match.recommended for match in result.all_skills}
    assert flagged == {"billing": True, "sso": False, "encryption": False, "misc": False}
    billing = next(match for match in result.all_skills if match.skill_id == "billing")
    assert billing.match_percentage == 35
