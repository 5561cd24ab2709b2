"""Session builder: capacity-bounded, review-first interleaving.

Pattern: R -> R -> (P) -> N -> R -> R -> (P) -> N ... with leftover reviews
appended at the end. Reviews are never starved by new material: they are
selected first and new concepts only fill what capacity is left.
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    CognitiveCapacity,
    Concept,
    MasteryRecord,
    NewItem,
    PretestItem,
    ReviewItem,
    SampleQuestion,
    SandboxItem,
    SessionItem,
    SessionPreview,
)
from .question_weighting import WeightingContext, weighted_questions

logger = logging.getLogger(__name__)

REVIEWS_PER_NEW_CONCEPT = 2

DURATION_MINUTES = {
    "review": 2,
    "new": 7,
    "pretest": 1,
    "synthesis": 3,
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def round_robin(bank: Sequence[SampleQuestion], start: int, count: int) -> List[SampleQuestion]:
    """``count`` questions from ``bank`` starting at ``start``, wrapping modulo its length."""
    if not bank:
        return []
    return [bank[(start + offset) % len(bank)] for offset in range(count)]


def is_due(record: MasteryRecord, now: datetime) -> bool:
    if record.state == "unseen":
        return False
    if record.due_at is None:
        return record.state == "learning"
    return _as_utc(record.due_at) <= _as_utc(now)


def _questions(
    bank: Sequence[SampleQuestion],
    start: int,
    count: int,
    context: WeightingContext,
    rng: Optional[random.Random],
) -> List[SampleQuestion]:
    if rng is None:
        return round_robin(bank, start, count)
    return weighted_questions(bank, start, count, context, rng)


def collect_pools(
    concepts: Iterable[Concept],
    mastery: Dict[str, MasteryRecord],
    *,
    now: Optional[datetime] = None,
    questions_per_new_concept: int = 2,
    capacity: Optional[CognitiveCapacity] = None,
    recent_accuracy: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[List[ReviewItem], List[NewItem]]:
    """Split concepts into due reviews (oldest due first) and unseen new concepts.

    Concepts without a mastery row are unseen. A due concept with an empty
    question bank cannot be reviewed and is left out. Questions rotate through
    the bank; with ``rng`` given, each slot first draws a question type from the
    adaptive weighting and takes the next question of that type.
    """
    moment = now or datetime.now(timezone.utc)
    due: List[Tuple[datetime, ReviewItem]] = []
    fresh: List[NewItem] = []

    for concept in concepts:
        record = mastery.get(concept.concept_id)
        if record is None or record.state == "unseen":
            context = WeightingContext(
                phase="learning",
                recent_accuracy=recent_accuracy,
                capacity=capacity,
                bloom_level=concept.bloom_level,
            )
            fresh.append(
                NewItem(
                    item_id=f"new-{concept.concept_id}",
                    concept_id=concept.concept_id,
                    concept_name=concept.name,
                    definition=concept.definition,
                    questions=_questions(concept.questions, 0, questions_per_new_concept, context, rng),
                )
            )
            continue
        if not is_due(record, moment):
            continue
        if not concept.questions:
            logger.warning("Concept %s is due for review but has no questions; skipping", concept.concept_id)
            continue
        context = WeightingContext(
            phase="review",
            recent_accuracy=recent_accuracy,
            mastery_state=record.state,
            capacity=capacity,
            bloom_level=concept.bloom_level,
        )
        question = _questions(concept.questions, record.review_count, 1, context, rng)[0]
        due_at = _as_utc(record.due_at) if record.due_at else datetime.min.replace(tzinfo=timezone.utc)
        due.append(
            (
                due_at,
                ReviewItem(item_id=f"review-{concept.concept_id}", concept_id=concept.concept_id, question=question),
            )
        )

    due.sort(key=lambda entry: entry[0])
    return [item for _, item in due], fresh


def interleave(
    reviews: Sequence[ReviewItem],
    new_items: Sequence[NewItem],
    *,
    pretest_checks: bool = False,
) -> List[SessionItem]:
    sequence: List[SessionItem] = []
    review_index = 0
    for new_item in new_items:
        for _ in range(REVIEWS_PER_NEW_CONCEPT):
            if review_index >= len(reviews):
                break
            sequence.append(reviews[review_index])
            review_index += 1
        if pretest_checks and new_item.questions:
            sequence.append(
                PretestItem(
                    item_id=f"pretest-{new_item.concept_id}",
                    concept_id=new_item.concept_id,
                    question=new_item.questions[0],
                )
            )
        sequence.append(new_item)
    sequence.extend(reviews[review_index:])
    return sequence


def build(
    review_pool: Sequence[ReviewItem],
    new_pool: Sequence[NewItem],
    capacity: int,
    *,
    new_limit: Optional[int] = None,
    pretest_checks: bool = False,
) -> List[SessionItem]:
    """Base session sequence bounded by ``capacity``.

    Takes ``min(len(review_pool), capacity)`` reviews, then fills the rest with
    new concepts (further capped by ``new_limit`` when given). An empty result
    means there is nothing to learn. Pretest checks ride along with their new
    concept and do not consume capacity of their own.
    """
    budget = max(0, int(capacity))
    reviews = list(review_pool[: min(len(review_pool), budget)])
    remaining = budget - len(reviews)
    if new_limit is not None:
        remaining = min(remaining, max(0, new_limit))
    new_items = list(new_pool[:remaining])

    if len(review_pool) > budget:
        logger.info("Review queue (%s) exceeds capacity (%s); new concepts dropped", len(review_pool), budget)

    return interleave(reviews, new_items, pretest_checks=pretest_checks)


def estimate_minutes(items: Sequence[SessionItem]) -> int:
    total = 0
    for item in items:
        if isinstance(item, SandboxItem):
            total += max(1, math.ceil(item.interaction.estimated_time_seconds / 60))
        else:
            total += DURATION_MINUTES[item.kind]
    return total


def preview(items: Sequence[SessionItem]) -> SessionPreview:
    counts = {kind: 0 for kind in ("review", "new", "synthesis", "sandbox", "pretest")}
    for item in items:
        counts[item.kind] += 1
    return SessionPreview(
        review_count=counts["review"],
        new_count=counts["new"],
        synthesis_count=counts["synthesis"],
        sandbox_count=counts["sandbox"],
        pretest_count=counts["pretest"],
        estimated_minutes=estimate_minutes(items),
        session_type="standard" if counts["new"] else "review_only",
    )


__all__ = [
    "DURATION_MINUTES",
    "build",
    "collect_pools",
    "estimate_minutes",
    "interleave",
    "is_due",
    "preview",
    "round_robin",
]
