"""Scope-definition relevance scoring.

Scores how well questions fall inside a knowledge item's declared scope
without calling an LLM:

- `covers` terms: fraction matched, weighted 0.7
- `future_additions` terms: fraction matched, weighted 0.2
- `not_included` terms: -0.5 per match
- result clamped to `[0, 1]`; an item with no `covers` always scores 0.

A covers term matches when the whole term appears in the lowercased question,
or when any of its words longer than two characters (or that word's light
stem, e.g. "invoicing" -> "invoic") does.
"""

from __future__ import annotations

import re

from answer_engine.types import ConfidenceTier, KnowledgeItem, RankedMatch

COVERS_WEIGHT = 0.7
FUTURE_WEIGHT = 0.2
NOT_INCLUDED_PENALTY = 0.5
BATCH_AVG_WEIGHT = 0.6
BATCH_MAX_WEIGHT = 0.4

_TERM_SPLIT = re.compile(r"[,;]")
_SUFFIXES = ("ing", "ed", "es", "s", "e")
_MIN_STEM = 4


def extract_scope_terms(covers: str | None) -> list[str]:
    if not covers:
        return []
    return [term.strip().lower() for term in _TERM_SPLIT.split(covers) if term.strip()]


def confidence_for_score(score: float) -> ConfidenceTier:
    if score >= 0.6:
        return "high"
    if score >= 0.3:
        return "medium"
    return "low"


def ranking_key(match: RankedMatch) -> tuple[float, str]:
    """Sort key: score descending, then title ascending."""
    return (-match.score, match.title)


def score_question(question: str, item: KnowledgeItem) -> float:
    scope = item.scope_definition
    if scope is None or not scope.covers:
        return 0.0

    question_lower = question.lower()
    score = 0.0

    cover_terms = extract_scope_terms(scope.covers)
    if cover_terms:
        hits = sum(1 for term in cover_terms if _term_matches(term, question_lower))
        score += (hits / len(cover_terms)) * COVERS_WEIGHT

    future_terms = [term.lower() for term in scope.future_additions if term.strip()]
    if future_terms:
        hits = sum(1 for term in future_terms if term in question_lower)
        score += (hits / len(future_terms)) * FUTURE_WEIGHT

    for term in scope.not_included:
        if term.strip() and term.lower() in question_lower:
            score -= NOT_INCLUDED_PENALTY

    return max(0.0, min(1.0, score))


def score_questions(questions: list[str], item: KnowledgeItem) -> float | None:
    """Combine per-question scores as `0.6 * avg + 0.4 * max`.

    Returns None for an empty question list; callers treat that as
    "no selection possible".
    """

    if not questions:
        return None
    scores = [score_question(question, item) for question in questions]
    average = sum(scores) / len(scores)
    return BATCH_AVG_WEIGHT * average + BATCH_MAX_WEIGHT * max(scores)


def matched_terms(questions: list[str], item: KnowledgeItem) -> list[str]:
    scope = item.scope_definition
    if scope is None:
        return []
    lowered = [question.lower() for question in questions]
    return [
        term
        for term in extract_scope_terms(scope.covers)
        if any(_term_matches(term, question) for question in lowered)
    ]


def rank_by_scope(
    questions: list[str],
    candidates: list[KnowledgeItem],
    *,
    strategy: str = "keyword",
) -> list[RankedMatch]:
    """Score every candidate against the questions and sort by relevance."""

    if not questions:
        return []
    ranked: list[RankedMatch] = []
    for item in candidates:
        score = score_questions(questions, item) or 0.0
        terms = matched_terms(questions, item)
        ranked.append(
            RankedMatch(
                skill_id=item.id,
                title=item.title,
                score=score,
                confidence=confidence_for_score(score),
                reason=(
                    f"Keyword match: {', '.join(terms[:3])}"
                    if terms
                    else "No direct scope matches"
                ),
                matched_terms=terms,
                strategy=strategy,
            )
        )
    return sorted(ranked, key=ranking_key)


def _term_matches(term: str, question_lower: str) -> bool:
    if term in question_lower:
        return True
    for word in term.split():
        if len(word) <= 2:
            continue
        if word in question_lower or _stem(word) in question_lower:
            return True
    return False


def _stem(word: str) -> str:
    for suffix in _SUFFIXES:
        if word.endswith(suffix) and len(word) - len(suffix) >= _MIN_STEM:
            return word[: -len(suffix)]
    return word
