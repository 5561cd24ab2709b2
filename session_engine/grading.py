"""Retrieval grading for quiz-style questions and the recall-quality table."""

from __future__ import annotations

import logging
import math
import re
from typing import List, Optional

from .config import Settings, get_settings
from .models import GradeResult, Rating, SampleQuestion

logger = logging.getLogger(__name__)

CLOSED_FORM_TYPES = frozenset({"multiple_choice", "true_false"})

MAX_ATTEMPTS_BEFORE_AGAIN = 3
MAX_HINTS_BEFORE_HARD = 1
HARD_TIME_RATIO = 2.0
EASY_TIME_RATIO = 0.8

_TOKEN_PATTERN = re.compile(r"\w+")


def normalize_answer(value: str) -> str:
    return " ".join((value or "").strip().lower().split())


def significant_tokens(text: str, *, stop_word_max_length: int) -> List[str]:
    """Lowercase word tokens longer than the stop-word cutoff, de-duplicated in order."""
    seen: List[str] = []
    for token in _TOKEN_PATTERN.findall((text or "").lower()):
        if len(token) <= stop_word_max_length or token in seen:
            continue
        seen.append(token)
    return seen


def fuzzy_match(
    canonical: str,
    answer: str,
    *,
    settings: Optional[Settings] = None,
) -> bool:
    """Token-overlap heuristic for open recall.

    The learner's answer must contain at least ceil(ratio x n) of the canonical
    answer's significant tokens. A canonical answer made only of short words
    has nothing to overlap on and falls back to normalized exact match.
    """
    resolved = settings or get_settings()
    tokens = significant_tokens(canonical, stop_word_max_length=resolved.stop_word_max_length)
    if not tokens:
        return normalize_answer(canonical) == normalize_answer(answer)

    normalized = normalize_answer(answer)
    required = math.ceil(resolved.fuzzy_overlap_ratio * len(tokens))
    matched = sum(1 for token in tokens if token in normalized)
    return matched >= required


def is_answer_correct(question: SampleQuestion, raw_answer: str, *, settings: Optional[Settings] = None) -> bool:
    if question.question_type in CLOSED_FORM_TYPES:
        return normalize_answer(raw_answer) == normalize_answer(question.correct_answer)
    return fuzzy_match(question.correct_answer, raw_answer, settings=settings)


def quiz_rating(is_correct: bool, elapsed_ms: Optional[int], *, settings: Optional[Settings] = None) -> Rating:
    if not is_correct:
        return Rating.AGAIN
    resolved = settings or get_settings()
    if elapsed_ms is not None and 0 <= elapsed_ms < resolved.fast_answer_ms:
        return Rating.EASY
    return Rating.GOOD


def grade(
    question: SampleQuestion,
    raw_answer: str,
    *,
    elapsed_ms: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> GradeResult:
    resolved = settings or get_settings()
    correct = is_answer_correct(question, raw_answer, settings=resolved)
    rating = quiz_rating(correct, elapsed_ms, settings=resolved)
    logger.debug(
        "Graded question %s (%s): correct=%s rating=%s",
        question.question_id,
        question.question_type,
        correct,
        rating.name,
    )
    return GradeResult(
        is_correct=correct,
        rating=rating,
        score=1.0 if correct else 0.0,
        feedback=question.explanation,
    )


def derive_rating(*, passed: bool, attempt_count: int, hints_used: int, time_ratio: float) -> Rating:
    """Recall quality for interactive exercises; rows are checked in order."""
    if not passed or attempt_count > MAX_ATTEMPTS_BEFORE_AGAIN:
        return Rating.AGAIN
    if hints_used > MAX_HINTS_BEFORE_HARD or time_ratio > HARD_TIME_RATIO:
        return Rating.HARD
    if hints_used == 0 and time_ratio < EASY_TIME_RATIO:
        return Rating.EASY
    return Rating.GOOD


__all__ = [
    "derive_rating",
    "fuzzy_match",
    "grade",
    "is_answer_correct",
    "normalize_answer",
    "quiz_rating",
    "significant_tokens",
]
