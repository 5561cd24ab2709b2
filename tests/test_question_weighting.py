from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from conftest import make_concept, make_settings
from session_engine.capacity import compute_capacity
from session_engine.models import CapacitySignals, MasteryRecord, SampleQuestion
from session_engine.question_weighting import (
    WeightingContext,
    adjusted_weights,
    apply_adaptive_adjustments,
    normalize_weights,
    phase_weights,
    pick_question,
    select_question_type,
    weighted_questions,
)
from session_engine.session_builder import collect_pools

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FixedRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def _question(question_id: str, question_type: str) -> SampleQuestion:
    return SampleQuestion(
        question_id=question_id,
        question_type=question_type,  # type: ignore[arg-type]
        prompt=f"Prompt for {question_id}",
        correct_answer="yes",
    )


def _bank() -> List[SampleQuestion]:
    return [_question("a", "multiple_choice"), _question("b", "true_false"), _question("c", "free_text")]


def test_phase_weights_start_from_the_base_distribution() -> None:
    assert phase_weights("pretest") == {
        "multiple_choice": 1.0,
        "true_false": 0.0,
        "free_text": 0.0,
        "interactive": 0.0,
    }
    assert phase_weights("learning") == {"multiple_choice": 0.3, "true_false": 0.1, "free_text": 0.4, "interactive": 0.2}
    assert phase_weights("review") == {"multiple_choice": 0.4, "true_false": 0.1, "free_text": 0.4, "interactive": 0.1}


def test_phase_weights_are_copies() -> None:
    weights = phase_weights("learning")
    weights["multiple_choice"] = 5.0
    assert phase_weights("learning")["multiple_choice"] == 0.3


def test_without_context_the_base_distribution_is_kept() -> None:
    assert adjusted_weights(WeightingContext(phase="learning")) == pytest.approx(phase_weights("learning"))


def test_low_accuracy_favours_multiple_choice() -> None:
    weights = adjusted_weights(WeightingContext(phase="learning", recent_accuracy=0.4))
    assert weights == pytest.approx(
        {"multiple_choice": 0.5 / 1.2, "true_false": 0.1 / 1.2, "free_text": 0.4 / 1.2, "interactive": 0.2 / 1.2}
    )

    steady = adjusted_weights(WeightingContext(phase="learning", recent_accuracy=0.5))
    assert steady == pytest.approx(phase_weights("learning"))


def test_solid_mastery_favours_interactive_practice() -> None:
    weights = adjusted_weights(WeightingContext(phase="review", mastery_state="mastered"))
    assert weights["interactive"] == pytest.approx(0.3 / 1.2)

    learning = adjusted_weights(WeightingContext(phase="review", mastery_state="learning"))
    assert learning == pytest.approx(phase_weights("review"))


def test_low_available_capacity_favours_closed_questions() -> None:
    settings = make_settings()
    strained = compute_capacity(CapacitySignals(local_hour=15, items_in_progress=3), settings=settings)
    relaxed = compute_capacity(CapacitySignals(local_hour=15, items_in_progress=1), settings=settings)

    weights = adjusted_weights(WeightingContext(phase="learning", capacity=strained))
    assert weights == pytest.approx(
        {"multiple_choice": 0.4 / 1.2, "true_false": 0.2 / 1.2, "free_text": 0.4 / 1.2, "interactive": 0.2 / 1.2}
    )
    assert adjusted_weights(WeightingContext(phase="learning", capacity=relaxed)) == pytest.approx(
        phase_weights("learning")
    )


@pytest.mark.parametrize("bloom_level", ["analyze", "evaluate", "create"])
def test_higher_order_bloom_levels_favour_free_text(bloom_level: str) -> None:
    weights = adjusted_weights(WeightingContext(phase="learning", bloom_level=bloom_level))  # type: ignore[arg-type]
    assert weights["free_text"] == pytest.approx(0.6 / 1.2)


def test_adjustments_stack_and_stay_normalized() -> None:
    context = WeightingContext(phase="review", recent_accuracy=0.1, mastery_state="review", bloom_level="create")
    weights = apply_adaptive_adjustments(phase_weights("review"), context)
    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights["multiple_choice"] == pytest.approx(0.6 / 1.6)
    assert weights["interactive"] == pytest.approx(0.3 / 1.6)
    assert weights["free_text"] == pytest.approx(0.6 / 1.6)


def test_empty_weights_normalize_to_equal_shares() -> None:
    assert normalize_weights({}) == {
        "multiple_choice": 0.25,
        "true_false": 0.25,
        "free_text": 0.25,
        "interactive": 0.25,
    }


@pytest.mark.parametrize(
    ("draw", "expected"),
    [
        (0.0, "multiple_choice"),
        (0.29, "multiple_choice"),
        (0.35, "true_false"),
        (0.5, "free_text"),
        (0.79, "free_text"),
        (0.85, "interactive"),
        (0.999, "interactive"),
    ],
)
def test_select_question_type_walks_the_cumulative_weights(draw: float, expected: str) -> None:
    context = WeightingContext(phase="learning")
    assert select_question_type(context, FixedRandom(draw)) == expected  # type: ignore[arg-type]


def test_pretest_always_draws_multiple_choice() -> None:
    context = WeightingContext(phase="pretest", bloom_level="create")
    weights = adjusted_weights(context)
    assert weights["multiple_choice"] == pytest.approx(1.0 / 1.2)
    draw = FixedRandom(0.999)
    assert select_question_type(WeightingContext(phase="pretest"), draw) == "multiple_choice"  # type: ignore[arg-type]


def test_pick_question_prefers_the_drawn_type_in_rotation_order() -> None:
    bank = _bank()
    assert pick_question(bank, 0, "free_text").question_id == "c"
    assert pick_question(bank, 1, "multiple_choice").question_id == "a"


def test_pick_question_falls_back_to_the_next_unused_question() -> None:
    bank = _bank()
    assert pick_question(bank, 0, "interactive").question_id == "a"
    assert pick_question(bank, 1, "interactive").question_id == "b"
    assert pick_question(bank, 1, "true_false", exclude={"b"}).question_id == "c"
    assert pick_question(bank, 2, "true_false", exclude={"a", "b", "c"}).question_id == "c"
    assert pick_question([], 0, "free_text") is None


def test_weighted_questions_never_repeat_while_the_bank_lasts() -> None:
    picked = weighted_questions(_bank(), 0, 3, WeightingContext(phase="learning"), FixedRandom(0.5))
    assert [question.question_id for question in picked] == ["c", "b", "a"]
    assert weighted_questions([], 0, 2, WeightingContext(phase="learning"), FixedRandom(0.5)) == []


def test_collect_pools_uses_weighting_only_with_an_rng() -> None:
    concept = make_concept("r1").model_copy(
        update={"questions": [_question("r1-mc", "multiple_choice"), _question("r1-ft", "free_text")]}
    )
    mastery = {
        "r1": MasteryRecord(user_id="u1", concept_id="r1", state="review", due_at=NOW - timedelta(hours=1)),
    }

    rotated, _ = collect_pools([concept], mastery, now=NOW)
    weighted, _ = collect_pools([concept], mastery, now=NOW, rng=FixedRandom(0.5))  # type: ignore[arg-type]

    assert rotated[0].question.question_id == "r1-mc"
    assert weighted[0].question.question_id == "r1-ft"


def test_collect_pools_feeds_accuracy_into_new_concept_questions() -> None:
    concept = make_concept("n1").model_copy(
        update={"questions": [_question("n1-ft", "free_text"), _question("n1-mc", "multiple_choice")]}
    )

    draw = FixedRandom(0.35)
    _, struggling = collect_pools([concept], {}, now=NOW, recent_accuracy=0.2, rng=draw)  # type: ignore[arg-type]
    _, steady = collect_pools([concept], {}, now=NOW, recent_accuracy=0.9, rng=draw)  # type: ignore[arg-type]

    assert [question.question_id for question in struggling[0].questions] == ["n1-mc", "n1-ft"]
    assert [question.question_id for question in steady[0].questions] == ["n1-ft", "n1-mc"]
