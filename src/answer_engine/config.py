"""Configuration models for the answering engine."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field, model_validator

ModelSpeed = Literal["quality", "fast"]

# Hard ceiling on questions per LLM call, independent of the output budget.
MAX_BATCH_SIZE = 20


class ModelConfig(BaseModel):
    """Maps model speed tiers to model names and token ceilings."""

    models: dict[str, str] = Field(
        default_factory=lambda: {
            "quality": "claude-sonnet-4-20250514",
            "fast": "claude-3-5-haiku-20241022",
        }
    )
    max_output_tokens: dict[str, int] = Field(
        default_factory=lambda: {"quality": 16000, "fast": 16000}
    )
    input_context_tokens: dict[str, int] = Field(
        default_factory=lambda: {"quality": 200000, "fast": 200000}
    )
    reserved_buffer_tokens: int = Field(default=10000, ge=0)
    temperature: float = Field(default=0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_speeds(self) -> "ModelConfig":
        for speed in self.models:
            if speed not in self.max_output_tokens or speed not in self.input_context_tokens:
                raise ValueError(f"Missing token limits for model speed: {speed}")
        return self


class CacheConfig(BaseModel):
    """Minimum stable-prefix size (in estimated tokens) before caching pays off.

    Keys of `thresholds` are matched as lowercase substrings of the model name;
    the first match wins, otherwise `default_threshold` applies.
    """

    thresholds: dict[str, int] = Field(default_factory=lambda: {"haiku": 2048})
    default_threshold: int = Field(default=1024, ge=0)
    force_caching: bool = False


class BatchConfig(BaseModel):
    """Configures batch sizing and per-call limits."""

    max_batch_size: int = Field(default=MAX_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE)
    tokens_per_answer: int = Field(default=600, ge=1)
    timeout_seconds: float = Field(default=120.0, gt=0.0)
    max_file_context_tokens: int = Field(default=50000, ge=1)


class SelectionConfig(BaseModel):
    """Configures skill selection and forecast heuristics."""

    max_skills: int = Field(default=10, ge=1)
    min_score: float = Field(default=0.1, ge=0.0, le=1.0)
    rerank_boost: float = Field(default=10.0, gt=1.0)
    avg_tokens_per_skill: int = Field(default=3000, ge=1)
    tokens_per_question: int = Field(default=200, ge=0)
    forecast_overhead_tokens: int = Field(default=500, ge=0)


class AnswerPolicy(BaseModel):
    """How strictly batch answer items are validated.

    In strict mode an item without a `response` field fails the whole batch;
    in lenient mode it becomes an empty response.
    """

    strict: bool = True


class BreakerConfig(BaseModel):
    """Circuit breaker thresholds for the LLM provider."""

    failure_threshold: int = Field(default=3, ge=1)
    reset_timeout: float = Field(default=30.0, gt=0.0)
    half_open_max_calls: int = Field(default=2, ge=1)


class EngineConfig(BaseModel):
    """Top-level configuration handed to the pipeline and its components."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    answers: AnswerPolicy = Field(default_factory=AnswerPolicy)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)

    def model_for(self, speed: str) -> str:
        try:
            return self.model.models[speed]
        except KeyError as exc:
            raise ValueError(f"Unknown model speed: {speed}") from exc

    def max_output_tokens_for(self, speed: str) -> int:
        return self.model.max_output_tokens[speed]

    def input_limit_for(self, speed: str) -> int:
        """Usable input tokens for a speed tier after the reserved buffer."""
        return self.model.input_context_tokens[speed] - self.model.reserved_buffer_tokens

    def effective_batch_size(self, speed: str = "quality") -> int:
        """Questions per call: output budget / tokens per answer, capped."""
        by_output = self.max_output_tokens_for(speed) // self.batch.tokens_per_answer
        return max(1, min(self.batch.max_batch_size, by_output))

    @classmethod
    def from_env(cls) -> "EngineConfig":
        config = cls()
        quality = os.getenv("ANSWER_ENGINE_MODEL_QUALITY")
        fast = os.getenv("ANSWER_ENGINE_MODEL_FAST")
        if quality:
            config.model.models["quality"] = quality
        if fast:
            config.model.models["fast"] = fast

        batch_size = os.getenv("ANSWER_ENGINE_MAX_BATCH_SIZE")
        timeout = os.getenv("ANSWER_ENGINE_TIMEOUT_SECONDS")
        max_skills = os.getenv("ANSWER_ENGINE_MAX_SKILLS")
        strict = os.getenv("ANSWER_ENGINE_STRICT")

        return cls(
            model=config.model,
            batch=BatchConfig(
                max_batch_size=int(batch_size) if batch_size else MAX_BATCH_SIZE,
                timeout_seconds=float(timeout) if timeout else 120.0,
            ),
            selection=SelectionConfig(max_skills=int(max_skills) if max_skills else 10),
            answers=AnswerPolicy(
                strict=strict.lower() != "false" if strict is not None else True
            ),
        )
