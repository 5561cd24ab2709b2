from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

from conftest import make_concept
from session_engine.models import MasteryRecord, NewItem, PretestItem, ReviewItem
from session_engine.session_builder import build, collect_pools, is_due, preview, round_robin

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _reviews(count: int) -> List[ReviewItem]:
    concept = make_concept("seed", questions=1)
    return [
        ReviewItem(item_id=f"review-{index}", concept_id=f"c{index}", question=concept.questions[0])
        for index in range(count)
    ]


def _new(count: int) -> List[NewItem]:
    return [
        NewItem(item_id=f"new-{index}", concept_id=f"n{index}", concept_name=f"New {index}")
        for index in range(count)
    ]


def _kinds(items: list) -> str:
    return "".join(item.kind[0].upper() for item in items)


def test_reviews_come_first_and_new_fills_remaining_capacity() -> None:
    items = build(_reviews(3), _new(5), 5)
    assert _kinds(items) == "RRNRN"
    assert len(items) == 5


def test_three_reviews_leave_room_for_one_new_concept_at_capacity_four() -> None:
    items = build(_reviews(3), _new(10), 4)
    assert _kinds(items) == "RRNR"
    assert [item.item_id for item in items if item.kind == "review"] == ["review-0", "review-1", "review-2"]
    assert [item.item_id for item in items if item.kind == "new"] == ["new-0"]


def test_review_backlog_beyond_capacity_drops_all_new_concepts() -> None:
    items = build(_reviews(6), _new(3), 4)
    assert _kinds(items) == "RRRR"


def test_only_new_concepts() -> None:
    assert _kinds(build([], _new(5), 3)) == "NNN"


def test_empty_pools_mean_nothing_to_learn() -> None:
    assert build([], [], 4) == []


def test_new_limit_caps_new_items() -> None:
    assert _kinds(build(_reviews(1), _new(5), 6, new_limit=2)) == "RNN"
    assert _kinds(build(_reviews(2), _new(5), 6, new_limit=0)) == "RR"


def test_pretest_checks_precede_their_concept_without_using_capacity() -> None:
    concept = make_concept("n0")
    new_item = NewItem(item_id="new-n0", concept_id="n0", concept_name="N0", questions=concept.questions)
    items = build(_reviews(2), [new_item], 3, pretest_checks=True)
    assert _kinds(items) == "RRPN"
    assert isinstance(items[2], PretestItem)
    assert items[2].question == concept.questions[0]


def test_round_robin_wraps_modulo_bank_size() -> None:
    bank = make_concept("c", questions=3).questions
    picked = round_robin(bank, 2, 4)
    assert [question.question_id for question in picked] == ["c-q2", "c-q0", "c-q1", "c-q2"]
    assert round_robin([], 0, 2) == []


def test_due_rules() -> None:
    assert not is_due(MasteryRecord(user_id="u", concept_id="c", state="unseen"), NOW)
    assert is_due(MasteryRecord(user_id="u", concept_id="c", state="learning"), NOW)
    assert not is_due(MasteryRecord(user_id="u", concept_id="c", state="review"), NOW)
    assert is_due(
        MasteryRecord(user_id="u", concept_id="c", state="review", due_at=datetime(2024, 5, 1, 11, 0)),
        NOW,
    )
    assert not is_due(
        MasteryRecord(user_id="u", concept_id="c", state="mastered", due_at=NOW + timedelta(days=3)),
        NOW,
    )


def test_collect_pools_orders_reviews_by_due_date_and_rotates_questions() -> None:
    concepts = [make_concept("late", questions=3), make_concept("early", questions=3), make_concept("fresh")]
    mastery = {
        "late": MasteryRecord(
            user_id="u", concept_id="late", state="review", due_at=NOW - timedelta(hours=1), review_count=4
        ),
        "early": MasteryRecord(
            user_id="u", concept_id="early", state="review", due_at=NOW - timedelta(days=2), review_count=0
        ),
    }

    reviews, fresh = collect_pools(concepts, mastery, now=NOW)

    assert [item.concept_id for item in reviews] == ["early", "late"]
    assert reviews[1].question.question_id == "late-q1"
    assert [item.concept_id for item in fresh] == ["fresh"]
    assert len(fresh[0].questions) == 2


def test_collect_pools_skips_due_concepts_without_questions() -> None:
    concepts = [make_concept("empty", questions=0)]
    mastery = {"empty": MasteryRecord(user_id="u", concept_id="empty", state="learning")}
    reviews, fresh = collect_pools(concepts, mastery, now=NOW)
    assert reviews == []
    assert fresh == []


def test_preview_estimates_duration_and_type() -> None:
    summary = preview(build(_reviews(2), _new(1), 3))
    assert summary.review_count == 2
    assert summary.new_count == 1
    assert summary.estimated_minutes == 2 * 2 + 7
    assert summary.session_type == "standard"

    assert preview(build(_reviews(2), [], 3)).session_type == "review_only"
