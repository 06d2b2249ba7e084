"""Renderers for the context sections and the per-batch instruction."""

from __future__ import annotations

from collections.abc import Sequence

from answer_engine.types import KnowledgeItem, Question

SECTION_RULE = "\n\n---\n\n"

ANSWER_FIELDS = (
    "questionIndex",
    "response",
    "confidence",
    "sources",
    "reasoning",
    "inference",
    "remarks",
)


def render_skills_context(items: Sequence[KnowledgeItem]) -> str:
    """Reference material section; empty when there are no items."""
    if not items:
        return ""
    blocks = [
        f"### Skill {position}: {item.title}\n\n{item.content}"
        for position, item in enumerate(items, start=1)
    ]
    return (
        "# AVAILABLE SKILLS (Reference Material)\n\n"
        "The following pre-verified skills are available for reference when answering "
        "these questions. Use these as your primary source of truth:\n\n"
        + "\n\n".join(blocks)
        + SECTION_RULE
    )


def render_file_context(text: str | None) -> str:
    if not text or not text.strip():
        return ""
    return (
        "# FILE CONTEXT (Complete Source Document)\n\n"
        "The following is the complete content of the uploaded file containing all "
        "questions. Use it to understand the full scope and relationships between "
        "questions:\n\n"
        f"{text}"
        + SECTION_RULE
    )


def render_batch_instruction(questions: Sequence[Question]) -> str:
    """User message listing the batch, numbered by each question's index."""
    listing = "\n".join(
        f"{question.index}. {question.prompt_text.strip()}" for question in questions
    )
    return "\n".join(
        [
            "Answer each of the following questions. Return a JSON array where each "
            "element has these fields:",
            "- questionIndex: the question number (integer)",
            "- response: the complete answer",
            '- confidence: "High", "Medium", or "Low"',
            '- sources: which skills/documents were used (or "None" if answering from '
            "general knowledge)",
            "- reasoning: what information was found directly in the sources",
            "- inference: what was logically deduced or inferred (or \"None\" if "
            "everything was found directly)",
            '- remarks: any important caveats, limitations, or notes (or "None" if none)',
            "",
            "IMPORTANT: Return ONLY a valid JSON array. No markdown code fences, no "
            "explanations outside the JSON.",
            "",
            "Questions:",
            listing,
        ]
    )
