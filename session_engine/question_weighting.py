"""Adaptive question-type weighting.

Each phase starts from a base distribution over question types:

- pretest: multiple choice only
- learning: 30% multiple choice, 10% true/false, 40% free text, 20% interactive
- review: 40% multiple choice, 10% true/false, 40% free text, 10% interactive

Context shifts the distribution additively before it is renormalized. Low
recent accuracy favours multiple choice, solid mastery favours interactive
application, and low available capacity favours the simple closed types.
Higher-order Bloom levels favour free text.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Sequence, Set

from .models import BloomLevel, CognitiveCapacity, MasteryState, SampleQuestion

logger = logging.getLogger(__name__)

QuestionPhase = Literal["pretest", "learning", "review"]
WeightedType = Literal["multiple_choice", "true_false", "free_text", "interactive"]
QuestionWeights = Dict[str, float]

WEIGHTED_TYPES = ("multiple_choice", "true_false", "free_text", "interactive")

PHASE_WEIGHTS: Dict[str, QuestionWeights] = {
    "pretest": {"multiple_choice": 1.0, "true_false": 0.0, "free_text": 0.0, "interactive": 0.0},
    "learning": {"multiple_choice": 0.3, "true_false": 0.1, "free_text": 0.4, "interactive": 0.2},
    "review": {"multiple_choice": 0.4, "true_false": 0.1, "free_text": 0.4, "interactive": 0.1},
}

ADJUSTMENT = 0.2
LOW_ACCURACY_THRESHOLD = 0.5
LOW_AVAILABLE_CAPACITY_PERCENT = 50.0
SOLID_MASTERY_STATES = frozenset({"review", "mastered"})
HIGHER_ORDER_BLOOM_LEVELS = frozenset({"analyze", "evaluate", "create"})


@dataclass(frozen=True)
class WeightingContext:
    phase: QuestionPhase
    recent_accuracy: Optional[float] = None
    mastery_state: Optional[MasteryState] = None
    capacity: Optional[CognitiveCapacity] = None
    bloom_level: Optional[BloomLevel] = None


def phase_weights(phase: QuestionPhase) -> QuestionWeights:
    return dict(PHASE_WEIGHTS[phase])


def normalize_weights(weights: QuestionWeights) -> QuestionWeights:
    total = sum(weights.get(question_type, 0.0) for question_type in WEIGHTED_TYPES)
    if total <= 0:
        share = 1.0 / len(WEIGHTED_TYPES)
        return {question_type: share for question_type in WEIGHTED_TYPES}
    return {question_type: weights.get(question_type, 0.0) / total for question_type in WEIGHTED_TYPES}


def apply_adaptive_adjustments(weights: QuestionWeights, context: WeightingContext) -> QuestionWeights:
    adjusted = {question_type: weights.get(question_type, 0.0) for question_type in WEIGHTED_TYPES}

    if context.recent_accuracy is not None and context.recent_accuracy < LOW_ACCURACY_THRESHOLD:
        adjusted["multiple_choice"] += ADJUSTMENT
    if context.mastery_state in SOLID_MASTERY_STATES:
        adjusted["interactive"] += ADJUSTMENT
    if context.capacity is not None and 100.0 - context.capacity.percentage_used < LOW_AVAILABLE_CAPACITY_PERCENT:
        adjusted["multiple_choice"] += ADJUSTMENT / 2
        adjusted["true_false"] += ADJUSTMENT / 2
    if context.bloom_level in HIGHER_ORDER_BLOOM_LEVELS:
        adjusted["free_text"] += ADJUSTMENT

    return normalize_weights(adjusted)


def adjusted_weights(context: WeightingContext) -> QuestionWeights:
    return apply_adaptive_adjustments(phase_weights(context.phase), context)


def select_question_type(context: WeightingContext, rng: Optional[random.Random] = None) -> WeightedType:
    """Weighted draw over the adjusted distribution; ``rng`` makes it reproducible."""
    weights = adjusted_weights(context)
    draw = (rng or random).random()
    cumulative = 0.0
    for question_type in WEIGHTED_TYPES[:-1]:
        cumulative += weights[question_type]
        if draw < cumulative:
            return question_type  # type: ignore[return-value]
    return "interactive"


def pick_question(
    bank: Sequence[SampleQuestion],
    start: int,
    preferred: str,
    *,
    exclude: Optional[Set[str]] = None,
) -> Optional[SampleQuestion]:
    """Next question in rotation order from ``start``, preferring the drawn type.

    Interactive draws never match a quiz question; like any type missing from
    the bank they fall back to the next unused question in rotation.
    """
    if not bank:
        return None
    skipped = exclude or set()
    rotation = [bank[(start + offset) % len(bank)] for offset in range(len(bank))]
    unused = [question for question in rotation if question.question_id not in skipped] or rotation
    for question in unused:
        if question.question_type == preferred:
            return question
    return unused[0]


def weighted_questions(
    bank: Sequence[SampleQuestion],
    start: int,
    count: int,
    context: WeightingContext,
    rng: Optional[random.Random] = None,
) -> List[SampleQuestion]:
    picked: List[SampleQuestion] = []
    used: Set[str] = set()
    for offset in range(count):
        preferred = select_question_type(context, rng)
        question = pick_question(bank, start + offset, preferred, exclude=used)
        if question is None:
            break
        picked.append(question)
        used.add(question.question_id)
    logger.debug(
        "Picked %s for %s phase",
        [question.question_id for question in picked],
        context.phase,
    )
    return picked


__all__ = [
    "PHASE_WEIGHTS",
    "WeightingContext",
    "adjusted_weights",
    "apply_adaptive_adjustments",
    "normalize_weights",
    "phase_weights",
    "pick_question",
    "select_question_type",
    "weighted_questions",
]
