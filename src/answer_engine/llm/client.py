"""Completion collaborator contract and a LangChain-backed implementation."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from answer_engine.config import ModelConfig
from answer_engine.types import Completion, SystemContent, UsageInfo


class CompletionClient(Protocol):
    """Anything that can turn a system prompt + user message into text."""

    async def complete(
        self,
        *,
        model: str,
        system: SystemContent,
        user_message: str,
        max_output_tokens: int,
    ) -> Completion:
        """Run one completion; raise on transport failure."""


ChatModelFactory = Callable[[str, int, float], BaseChatModel]


def create_chat_model(model: str, max_tokens: int, temperature: float = 0.2) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic

    return ChatAnthropic(model=model, max_tokens=max_tokens, temperature=temperature)


def to_anthropic_blocks(system: SystemContent) -> str | list[dict[str, Any]]:
    """Render system content the way Anthropic's prompt cache expects it."""
    if isinstance(system, str):
        return system
    blocks: list[dict[str, Any]] = []
    for segment in system:
        block: dict[str, Any] = {"type": "text", "text": segment.text}
        if segment.cacheable:
            block["cache_control"] = {"type": "ephemeral"}
        blocks.append(block)
    return blocks


class LangChainCompletionClient:
    """Adapts a LangChain chat model to the `CompletionClient` contract.

    Chat models are built lazily per `(model, max_output_tokens)` pair through
    `model_factory` and reused afterwards. Every model is built with the
    client's sampling `temperature`.
    """

    def __init__(
        self,
        model_factory: ChatModelFactory | None = None,
        *,
        temperature: float = 0.2,
    ) -> None:
        self._model_factory = model_factory or create_chat_model
        self.temperature = temperature
        self._models: dict[tuple[str, int], BaseChatModel] = {}

    @classmethod
    def from_config(
        cls, config: ModelConfig, model_factory: ChatModelFactory | None = None
    ) -> "LangChainCompletionClient":
        return cls(model_factory, temperature=config.temperature)

    def chat_model(self, model: str, max_output_tokens: int) -> BaseChatModel:
        key = (model, max_output_tokens)
        if key not in self._models:
            self._models[key] = self._model_factory(model, max_output_tokens, self.temperature)
        return self._models[key]

    async def complete(
        self,
        *,
        model: str,
        system: SystemContent,
        user_message: str,
        max_output_tokens: int,
    ) -> Completion:
        chat_model = self.chat_model(model, max_output_tokens)
        message = await chat_model.ainvoke(
            [
                SystemMessage(content=to_anthropic_blocks(system)),
                HumanMessage(content=user_message),
            ]
        )
        return Completion(
            text=_message_text(message.content),
            usage=_usage_from_metadata(getattr(message, "usage_metadata", None), model),
        )


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)


def _usage_from_metadata(metadata: Any, model: str) -> UsageInfo:
    if not metadata:
        return UsageInfo(input_tokens=0, output_tokens=0, model=model)
    details = metadata.get("input_token_details") or {}
    return UsageInfo(
        input_tokens=int(metadata.get("input_tokens", 0) or 0),
        output_tokens=int(metadata.get("output_tokens", 0) or 0),
        model=model,
        cache_creation_tokens=details.get("cache_creation"),
        cache_read_tokens=details.get("cache_read"),
    )

