"""Prompt compositions assembled from reusable blocks."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from answer_engine.budget.tokens import estimate_tokens
from answer_engine.errors import InvalidInput

CALL_MODE_BLOCK_ID = "runtime_call_mode"
USER_INSTRUCTIONS_BLOCK_ID = "runtime_user_instructions"


class PromptBlock(BaseModel):
    """A named, reusable prompt fragment."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    content: str = ""


class PromptComposition(BaseModel):
    """An ordered list of block ids forming one system prompt."""

    id: str = Field(min_length=1)
    block_ids: list[str] = Field(default_factory=list)
    description: str = ""


class RuntimeContext(BaseModel):
    """Per-request prompt modifiers recorded as runtime blocks."""

    call_mode: bool = False
    user_instructions: str | None = None


class AssembledPrompt(BaseModel):
    prompt: str
    composition_id: str
    block_ids: list[str]
    runtime_block_ids: list[str] = Field(default_factory=list)


BlockResolver = Callable[[list[str]], list[PromptBlock]]


class BlockLibrary:
    """Instance-scoped block store that doubles as a `BlockResolver`."""

    def __init__(self, blocks: list[PromptBlock] | None = None) -> None:
        self._blocks: dict[str, PromptBlock] = {}
        self._compositions: dict[str, PromptComposition] = {}
        for block in blocks or []:
            self.register(block)

    def register(self, block: PromptBlock) -> None:
        if block.id in self._blocks:
            raise ValueError(f"Prompt block already registered: {block.id}")
        self._blocks[block.id] = block

    def register_composition(self, composition: PromptComposition) -> None:
        if composition.id in self._compositions:
            raise ValueError(f"Composition already registered: {composition.id}")
        self._compositions[composition.id] = composition

    def composition(self, composition_id: str) -> PromptComposition:
        composition = self._compositions.get(composition_id)
        if composition is None:
            available = ", ".join(sorted(self._compositions))
            raise InvalidInput(
                f'Unknown composition: "{composition_id}". Available: {available}'
            )
        return composition

    def __call__(self, block_ids: list[str]) -> list[PromptBlock]:
        missing = [block_id for block_id in block_ids if block_id not in self._blocks]
        if missing:
            raise InvalidInput(f"Unknown prompt blocks: {', '.join(missing)}")
        return [self._blocks[block_id] for block_id in block_ids]


def assemble_system_prompt(
    composition: PromptComposition,
    resolver: BlockResolver,
    runtime: RuntimeContext | None = None,
) -> AssembledPrompt:
    """Resolve a composition's blocks and fold them into one prompt.

    Non-blank blocks render as `## {name}` sections separated by blank lines.
    Runtime context adds blocks that are reported separately for
    transparency; user instructions are placed just before the final block
    so they stay prominent.
    """

    block_ids = list(composition.block_ids)
    runtime_block_ids: list[str] = []
    if runtime is not None and runtime.call_mode:
        runtime_block_ids.append(CALL_MODE_BLOCK_ID)

    blocks = resolver(block_ids + runtime_block_ids)
    parts = [f"## {block.name}\n\n{block.content}" for block in blocks if block.content.strip()]

    if runtime is not None and runtime.user_instructions and runtime.user_instructions.strip():
        runtime_block_ids.append(USER_INSTRUCTIONS_BLOCK_ID)
        section = f"## User Instructions\n\n{runtime.user_instructions.strip()}"
        if parts:
            parts.insert(len(parts) - 1, section)
        else:
            parts.append(section)

    return AssembledPrompt(
        prompt="\n\n".join(parts),
        composition_id=composition.id,
        block_ids=block_ids,
        runtime_block_ids=runtime_block_ids,
    )


def composition_token_breakdown(
    composition: PromptComposition,
    resolver: BlockResolver,
) -> dict[str, Any]:
    """Estimated tokens per block, for showing what drives prompt size."""
    blocks = [
        {"id": block.id, "name": block.name, "tokens": estimate_tokens(block.content)}
        for block in resolver(list(composition.block_ids))
    ]
    return {"total": sum(block["tokens"] for block in blocks), "blocks": blocks}
