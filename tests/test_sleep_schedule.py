from __future__ import annotations

from datetime import datetime

from session_engine.models import SleepPreferences
from session_engine.sleep_schedule import (
    is_past_bedtime,
    is_within_morning_window,
    is_within_sleep_window,
    recommend_session,
)

PREFERENCES = SleepPreferences(bedtime="23:00", wake_time="07:00")


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 3, 4, hour, minute)


def test_without_preferences_sessions_are_standard() -> None:
    recommendation = recommend_session(_at(23, 30), None)
    assert recommendation.recommendation_type == "standard"
    assert recommendation.new_concepts_allowed == 4


def test_past_bedtime_recommends_skipping() -> None:
    assert is_past_bedtime(_at(23, 30), "23:00")
    assert is_past_bedtime(_at(2), "23:00")
    assert not is_past_bedtime(_at(9), "23:00")

    recommendation = recommend_session(_at(0, 15), PREFERENCES)
    assert recommendation.recommendation_type == "skip"
    assert recommendation.suggested_minutes == 0
    assert recommendation.new_concepts_allowed == 0


def test_after_midnight_bedtime_only_counts_until_morning() -> None:
    assert is_past_bedtime(_at(1, 30), "01:00")
    assert not is_past_bedtime(_at(0, 30), "01:00")
    assert not is_past_bedtime(_at(12), "01:00")


def test_two_hours_before_bed_is_review_only() -> None:
    assert is_within_sleep_window(_at(21, 30), "23:00")
    assert not is_within_sleep_window(_at(20, 30), "23:00")

    recommendation = recommend_session(_at(22), PREFERENCES)
    assert recommendation.recommendation_type == "review_only"
    assert recommendation.new_concepts_allowed == 0


def test_morning_window_is_a_light_session() -> None:
    assert is_within_morning_window(_at(8), "07:00")
    assert not is_within_morning_window(_at(10), "07:00")

    recommendation = recommend_session(_at(8, 30), PREFERENCES)
    assert recommendation.recommendation_type == "standard"
    assert recommendation.suggested_minutes == 15
    assert recommendation.new_concepts_allowed == 2


def test_midday_is_a_standard_session() -> None:
    recommendation = recommend_session(_at(14), PREFERENCES)
    assert recommendation.recommendation_type == "standard"
    assert recommendation.suggested_minutes == 25
    assert recommendation.new_concepts_allowed == 4
