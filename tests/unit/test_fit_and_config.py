import pytest
from pydantic import ValidationError

from answer_engine.budget.fit import estimate_context_fit
from answer_engine.config import BatchConfig, EngineConfig, ModelConfig
from answer_engine.errors import InvalidInput
from answer_engine.types import KnowledgeItem


def test_fit_estimate_with_scope_based_selection() -> None:
    fit = estimate_context_fit(40, candidate_count=30)

    assert fit.skill_count == 8
    assert fit.breakdown["skill_tokens"] == 8 * 3000
    assert fit.total_tokens == 24000 + 40 * 50 + 2000
    assert fit.fits
    assert fit.max_tokens == 200000
    assert fit.available_tokens == 190000
    assert fit.utilization_percent == 14
    assert fit.suggested_batch_size == 20


def test_fit_estimate_with_explicit_skills() -> None:
    skills = [KnowledgeItem(id="big", title="Big", content="z" * 4 * 190000)]

    fit = estimate_context_fit(3, skills=skills, file_context_tokens=1000)

    assert fit.skill_count == 1
    assert not fit.fits
    assert fit.utilization_percent == 97
    assert fit.suggested_batch_size == 3


def test_fit_estimate_rejects_zero_questions() -> None:
    with pytest.raises(InvalidInput):
        estimate_context_fit(0)


def test_engine_config_defaults() -> None:
    config = EngineConfig()

    assert config.model_for("quality") == "claude-sonnet-4-20250514"
    assert config.model_for("fast") == "claude-3-5-haiku-20241022"
    assert config.max_output_tokens_for("quality") == 16000
    assert config.input_limit_for("quality") == 190000
    assert config.batch.timeout_seconds == 120.0
    assert config.answers.strict


def test_engine_config_rejects_unknown_speed_and_bad_values() -> None:
    with pytest.raises(ValueError):
        EngineConfig().model_for("turbo")
    with pytest.raises(ValidationError):
        BatchConfig(max_batch_size=25)
    with pytest.raises(ValidationError):
        ModelConfig(models={"quality": "m", "extra": "n"})


def test_engine_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANSWER_ENGINE_MODEL_QUALITY", "claude-opus-4")
    monkeypatch.setenv("ANSWER_ENGINE_MAX_BATCH_SIZE", "8")
    monkeypatch.setenv("ANSWER_ENGINE_TIMEOUT_SECONDS", "45")
    monkeypatch.setenv("ANSWER_ENGINE_MAX_SKILLS", "4")
    monkeypatch.setenv("ANSWER_ENGINE_STRICT", "false")

    config = EngineConfig.from_env()

    assert config.model_for("quality") == "claude-opus-4"
    assert config.model_for("fast") == "claude-3-5-haiku-20241022"
    assert config.batch.max_batch_size == 8
    assert config.batch.timeout_seconds == 45.0
    assert config.selection.max_skills == 4
    assert not config.answers.strict
    assert config.effective_batch_size() == 8
