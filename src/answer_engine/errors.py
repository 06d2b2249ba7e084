"""Error taxonomy surfaced to callers of the engine."""

from __future__ import annotations


class AnswerEngineError(Exception):
    """Base class for all engine failures."""

    retryable = False


class InvalidInput(AnswerEngineError, ValueError):
    """Rejected before any external call (empty questions, bad options)."""


class NoCandidates(AnswerEngineError):
    """The knowledge base handed to selection is empty."""


class ContextOverflow(AnswerEngineError):
    """The estimated prompt does not fit the model's input window."""

    def __init__(
        self,
        *,
        total_tokens: int,
        limit: int,
        system_tokens: int,
        user_tokens: int,
    ) -> None:
        self.total_tokens = total_tokens
        self.limit = limit
        self.system_tokens = system_tokens
        self.user_tokens = user_tokens
        super().__init__(
            f"Batch exceeds context window: {total_tokens:,} tokens estimated "
            f"(system={system_tokens:,}, user={user_tokens:,}), max is {limit:,}. "
            "Reduce batch size or number of skills."
        )


class LLMTimeout(AnswerEngineError, TimeoutError):
    """The completion call exceeded its time ceiling."""

    retryable = True

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"LLM call timed out after {timeout_seconds:g}s")


class MalformedLLMResponse(AnswerEngineError):
    """No usable JSON could be recovered from the model output."""

    snippet_length = 500

    def __init__(self, message: str, raw: str = "") -> None:
        self.snippet = raw[: self.snippet_length]
        detail = f"{message}: {self.snippet}..." if self.snippet else message
        super().__init__(detail)


class ProviderFailure(AnswerEngineError):
    """Transport-level failure of the LLM provider."""

    retryable = True


class CircuitOpenError(ProviderFailure):
    """The provider circuit breaker is rejecting calls."""


class EmptyResponse(ProviderFailure):
    """The provider answered successfully but with no text."""

    retryable = False
