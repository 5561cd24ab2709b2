"""Prerequisite gap analysis over pretest answers."""

from __future__ import annotations

from typing import Dict, List, Sequence

from .models import GapRecommendation, PrerequisiteGapAnalysis, PretestAnswer

REVIEW_SUGGESTED_PERCENT = 50


def recommend(percentage: int) -> GapRecommendation:
    if percentage == 100:
        return "proceed"
    if percentage >= REVIEW_SUGGESTED_PERCENT:
        return "review_suggested"
    return "review_required"


def analyze_gaps(answers: Sequence[PretestAnswer]) -> PrerequisiteGapAnalysis:
    """A prerequisite counts as known only if every answer for it is correct."""
    if not answers:
        return PrerequisiteGapAnalysis(
            total_prerequisites=0,
            correct_count=0,
            percentage=100,
            recommendation="proceed",
            gaps=[],
        )

    by_prerequisite: Dict[str, List[bool]] = {}
    for answer in answers:
        by_prerequisite.setdefault(answer.prerequisite_id, []).append(answer.is_correct)

    gaps = [prerequisite_id for prerequisite_id, results in by_prerequisite.items() if not all(results)]
    total = len(by_prerequisite)
    correct = total - len(gaps)
    percentage = int(correct / total * 100 + 0.5)

    return PrerequisiteGapAnalysis(
        total_prerequisites=total,
        correct_count=correct,
        percentage=percentage,
        recommendation=recommend(percentage),
        gaps=gaps,
    )


__all__ = ["analyze_gaps", "recommend"]
