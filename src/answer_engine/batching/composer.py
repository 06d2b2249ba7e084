"""Contiguous batching of questions under an output-token ceiling."""

from __future__ import annotations

from answer_engine.config import MAX_BATCH_SIZE
from answer_engine.errors import InvalidInput
from answer_engine.types import Batch, Question


def derive_max_batch_size(
    output_token_ceiling: int,
    tokens_per_answer: int,
    safety_ceiling: int = MAX_BATCH_SIZE,
) -> int:
    """How many answers fit in one response, capped at `safety_ceiling`.

    With a 16k output ceiling and ~600 tokens per answer about 26 answers
    would fit; the safety ceiling keeps per-call latency and the blast radius
    of a failed call bounded.
    """

    if tokens_per_answer < 1:
        raise InvalidInput("tokens_per_answer must be at least 1")
    return max(1, min(safety_ceiling, output_token_ceiling // tokens_per_answer))


def validate_question_indices(questions: list[Question]) -> None:
    seen: set[int] = set()
    for question in questions:
        if question.index in seen:
            raise InvalidInput(f"Duplicate question index: {question.index}")
        seen.add(question.index)


def compose(questions: list[Question], max_batch_size: int) -> list[Batch]:
    """Split `questions` into ordered batches of at most `max_batch_size`.

    Batches are plain contiguous slices: no reordering and no balancing by
    expected answer length. For N questions and size M the result has
    `ceil(N / M)` batches whose concatenation is the input order.
    """

    if max_batch_size < 1:
        raise InvalidInput("max_batch_size must be at least 1")
    return [
        Batch(number=number, questions=tuple(questions[start : start + max_batch_size]))
        for number, start in enumerate(range(0, len(questions), max_batch_size), start=1)
    ]
