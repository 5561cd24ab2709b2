"""Two-layer evaluation for interactive sandbox exercises.

Layer 1 is deterministic (zone contents, sequence edit distance, connection
maps, token overlap for text). Layer 2 asks the text generator for a semantic
accuracy judgement and only runs for free-text responses on interactions
configured as ``ai_assisted``.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import CollaboratorError
from .grading import MAX_ATTEMPTS_BEFORE_AGAIN, derive_rating, significant_tokens
from .models import (
    Connection,
    CorrectState,
    ElementResult,
    SandboxEvaluationResult,
    SandboxInteraction,
    SandboxSubmission,
)
from .text_generation import GenerationOptions, TextGenerator, generate_structured

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_MS = 5000
ZONE_INTERACTIONS = frozenset({"matching", "fill_in_blank", "diagram_build"})

ScoredElements = Tuple[float, List[ElementResult]]


def evaluate_zone_contents(submitted: Dict[str, List[str]], correct: CorrectState) -> ScoredElements:
    if not correct.zone_contents:
        return 1.0, []

    results: List[ElementResult] = []
    correct_count = 0
    for zone_id, expected_elements in correct.zone_contents.items():
        actual = submitted.get(zone_id, [])
        for element_id in expected_elements:
            placed = element_id in actual
            actual_zone = next((zone for zone, elements in submitted.items() if element_id in elements), None)
            results.append(
                ElementResult(
                    element_id=element_id,
                    correct=placed,
                    expected_zone=zone_id,
                    actual_zone=actual_zone,
                )
            )
            if placed:
                correct_count += 1

    total = len(results)
    return (correct_count / total if total else 0.0), results


def levenshtein(a: Sequence[str], b: Sequence[str]) -> int:
    previous = list(range(len(b) + 1))
    for i, left in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, right in enumerate(b, start=1):
            if left == right:
                current[j] = previous[j - 1]
            else:
                current[j] = 1 + min(previous[j], current[j - 1], previous[j - 1])
        previous = current
    return previous[len(b)]


def evaluate_sequence(submitted: List[str], correct: CorrectState) -> ScoredElements:
    if not correct.sequence:
        return 1.0, []

    expected = correct.sequence
    distance = levenshtein(submitted, expected)
    longest = max(len(submitted), len(expected))
    score = 1.0 - distance / longest if longest else 1.0

    results = []
    for index, element_id in enumerate(submitted):
        expected_index = expected.index(element_id) if element_id in expected else None
        results.append(
            ElementResult(
                element_id=element_id,
                correct=index < len(expected) and expected[index] == element_id,
                expected_zone=f"position_{expected_index}" if expected_index is not None else None,
                actual_zone=f"position_{index}",
            )
        )
    return score, results


def evaluate_connections(submitted: List[Connection], correct: CorrectState) -> ScoredElements:
    if not correct.connections:
        return 1.0, []

    made = {(connection.source, connection.target) for connection in submitted}
    results = [
        ElementResult(
            element_id=f"{connection.source}->{connection.target}",
            correct=(connection.source, connection.target) in made,
        )
        for connection in correct.connections
    ]
    correct_count = sum(1 for result in results if result.correct)
    return correct_count / len(results), results


def evaluate_text(response: Optional[str], correct: CorrectState, *, settings: Settings) -> float:
    """Fraction of the reference answer's significant tokens present in the response."""
    if not response or not correct.text_answer:
        return 0.0
    tokens = significant_tokens(correct.text_answer, stop_word_max_length=settings.stop_word_max_length)
    normalized = " ".join(response.lower().split())
    if not tokens:
        return 1.0 if normalized == " ".join(correct.text_answer.lower().split()) else 0.0
    return sum(1 for token in tokens if token in normalized) / len(tokens)


def baseline_time_ms(interaction: SandboxInteraction, *, settings: Optional[Settings] = None) -> float:
    """Expected completion time: per-type base, per-element handling and reading time."""
    resolved = settings or get_settings()
    base = resolved.sandbox_baseline_ms.get(interaction.interaction_type, DEFAULT_BASELINE_MS)
    element_count = sum(1 for element in interaction.elements if element.draggable)
    words = len(interaction.instructions.split()) + sum(len(hint.split()) for hint in interaction.hints)
    reading_ms = words / resolved.reading_words_per_second * 1000.0
    return float(base + element_count * resolved.sandbox_element_ms + reading_ms)


def is_text_interaction(interaction: SandboxInteraction, submission: SandboxSubmission) -> bool:
    return interaction.correct_state.text_answer is not None and submission.text_response is not None


def score_feedback(score: float, passed: bool, attempt_count: int, hints_used: int) -> str:
    percent = round(score * 100)
    if passed:
        if score == 1.0 and hints_used == 0 and attempt_count == 1:
            return "Perfect! You got it right on the first try without any hints."
        if score == 1.0:
            return "Excellent! Everything is in the right place."
        if score >= 0.8:
            return f"Great job! You scored {percent}%. Just a few adjustments needed."
        return f"Good effort! You scored {percent}% which meets the threshold."
    if attempt_count >= MAX_ATTEMPTS_BEFORE_AGAIN:
        return f"You've made {attempt_count} attempts. Try reviewing the concept first."
    if score >= 0.5:
        return f"You're getting close with {percent}%. Try again!"
    return f"Score: {percent}%. Consider using a hint to help you."


def _deterministic_score(
    interaction: SandboxInteraction,
    submission: SandboxSubmission,
    settings: Settings,
) -> ScoredElements:
    correct = interaction.correct_state
    if is_text_interaction(interaction, submission):
        return evaluate_text(submission.text_response, correct, settings=settings), []
    if interaction.interaction_type in ZONE_INTERACTIONS:
        return evaluate_zone_contents(submission.zone_contents, correct)
    if interaction.interaction_type == "sequencing":
        return evaluate_sequence(submission.sequence, correct)
    return evaluate_connections(submission.connections, correct)


def _finalize(
    interaction: SandboxInteraction,
    submission: SandboxSubmission,
    *,
    score: float,
    elapsed_ms: int,
    baseline_ms: float,
    element_results: List[ElementResult],
    semantic_score: Optional[float] = None,
    feedback: Optional[str] = None,
) -> SandboxEvaluationResult:
    score = max(0.0, min(1.0, score))
    passed = not submission.gave_up and score >= interaction.correct_state.min_correct_percentage
    time_ratio = elapsed_ms / baseline_ms if baseline_ms > 0 else 1.0
    rating = derive_rating(
        passed=passed,
        attempt_count=submission.attempt_count,
        hints_used=submission.hints_used,
        time_ratio=time_ratio,
    )
    return SandboxEvaluationResult(
        interaction_id=interaction.interaction_id,
        concept_id=interaction.concept_id,
        interaction_type=interaction.interaction_type,
        cognitive_type=interaction.cognitive_type,
        score=round(score, 4),
        passed=passed,
        attempt_count=submission.attempt_count,
        hints_used=submission.hints_used,
        time_to_complete_ms=max(0, elapsed_ms),
        baseline_time_ms=round(baseline_ms, 2),
        rating=rating,
        feedback=feedback or score_feedback(score, passed, submission.attempt_count, submission.hints_used),
        element_results=element_results,
        semantic_score=semantic_score,
    )


def evaluate_deterministic(
    interaction: SandboxInteraction,
    submission: SandboxSubmission,
    elapsed_ms: int,
    *,
    settings: Optional[Settings] = None,
) -> SandboxEvaluationResult:
    resolved = settings or get_settings()
    if submission.gave_up:
        score, element_results = 0.0, []
    else:
        score, element_results = _deterministic_score(interaction, submission, resolved)
    return _finalize(
        interaction,
        submission,
        score=score,
        elapsed_ms=elapsed_ms,
        baseline_ms=baseline_time_ms(interaction, settings=resolved),
        element_results=element_results,
    )


class SemanticJudgement(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    feedback: str = ""
    misconception: Optional[str] = None


_JUDGE_PROMPT = (
    "You grade a learner's free-text answer for semantic accuracy against a reference answer. "
    "Score 1.0 for a fully accurate answer and 0.0 for an unrelated or wrong one. "
    "Give one sentence of encouraging feedback."
)


class SandboxEvaluator:
    """Runs the deterministic layer, then the semantic layer where it applies."""

    def __init__(self, generator: Optional[TextGenerator] = None, *, settings: Optional[Settings] = None) -> None:
        self._generator = generator
        self._settings = settings or get_settings()

    async def evaluate(
        self,
        interaction: SandboxInteraction,
        submission: SandboxSubmission,
        elapsed_ms: int,
    ) -> SandboxEvaluationResult:
        result = evaluate_deterministic(interaction, submission, elapsed_ms, settings=self._settings)
        if (
            self._generator is None
            or submission.gave_up
            or interaction.evaluation_mode != "ai_assisted"
            or not is_text_interaction(interaction, submission)
        ):
            return result

        context = {
            "instructions": interaction.instructions,
            "reference_answer": interaction.correct_state.text_answer,
            "rubric": interaction.rubric.model_dump() if interaction.rubric else None,
            "learner_answer": submission.text_response,
        }
        try:
            judged = await generate_structured(
                self._generator,
                _JUDGE_PROMPT,
                json.dumps(context, ensure_ascii=False),
                SemanticJudgement,
                GenerationOptions(temperature=0.0),
            )
        except CollaboratorError as exc:
            logger.warning(
                "Semantic judgement failed for interaction %s (%s); keeping deterministic score",
                interaction.interaction_id,
                exc.code,
            )
            return result

        semantic = judged.data.score
        combined = (result.score + semantic) / 2.0
        return _finalize(
            interaction,
            submission,
            score=combined,
            elapsed_ms=elapsed_ms,
            baseline_ms=result.baseline_time_ms,
            element_results=result.element_results,
            semantic_score=semantic,
            feedback=judged.data.feedback or None,
        )


__all__ = [
    "SandboxEvaluator",
    "SemanticJudgement",
    "baseline_time_ms",
    "evaluate_connections",
    "evaluate_deterministic",
    "evaluate_sequence",
    "evaluate_text",
    "evaluate_zone_contents",
    "levenshtein",
    "score_feedback",
]
