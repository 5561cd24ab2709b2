"""Sleep-aware session recommendations.

Rules, first match wins:

1. No preferences: standard session.
2. Past bedtime: skip.
3. Within two hours before bedtime: review only, no new concepts.
4. Within two hours after waking: light morning session.
5. Otherwise: standard session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from .models import SessionRecommendation, SleepPreferences

SLEEP_WINDOW_MINUTES = 2 * 60
MORNING_WINDOW_MINUTES = 2 * 60
EARLIEST_WAKE_MINUTES = 6 * 60
MINUTES_PER_DAY = 24 * 60

STANDARD_MINUTES = 25
MORNING_MINUTES = 15
REVIEW_MINUTES = 15
MAX_NEW_CONCEPTS = 4
MORNING_NEW_CONCEPTS = 2


def parse_clock(value: str) -> Tuple[int, int]:
    hours, minutes = value.split(":", 1)
    return int(hours) % 24, int(minutes) % 60


def _minutes_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def _clock_minutes(value: str) -> int:
    hours, minutes = parse_clock(value)
    return hours * 60 + minutes


def is_past_bedtime(now: datetime, bedtime: str) -> bool:
    current = _minutes_of_day(now)
    bed = _clock_minutes(bedtime)
    if bed >= 12 * 60:
        return current >= bed or current < EARLIEST_WAKE_MINUTES
    return bed <= current < EARLIEST_WAKE_MINUTES


def is_within_sleep_window(now: datetime, bedtime: str) -> bool:
    current = _minutes_of_day(now)
    until_bed = (_clock_minutes(bedtime) - current) % MINUTES_PER_DAY
    return 0 < until_bed <= SLEEP_WINDOW_MINUTES


def is_within_morning_window(now: datetime, wake_time: str) -> bool:
    current = _minutes_of_day(now)
    since_wake = (current - _clock_minutes(wake_time)) % MINUTES_PER_DAY
    return since_wake <= MORNING_WINDOW_MINUTES


def recommend_session(now: datetime, preferences: Optional[SleepPreferences]) -> SessionRecommendation:
    if preferences is None:
        return SessionRecommendation(
            recommendation_type="standard",
            reason="No schedule preferences set",
            suggested_minutes=STANDARD_MINUTES,
            new_concepts_allowed=MAX_NEW_CONCEPTS,
        )

    if is_past_bedtime(now, preferences.bedtime):
        return SessionRecommendation(
            recommendation_type="skip",
            reason="Past bedtime - rest for better learning tomorrow",
            suggested_minutes=0,
            new_concepts_allowed=0,
        )

    if is_within_sleep_window(now, preferences.bedtime):
        return SessionRecommendation(
            recommendation_type="review_only",
            reason="Close to bedtime - review only to help consolidation",
            suggested_minutes=REVIEW_MINUTES,
            new_concepts_allowed=0,
        )

    if is_within_morning_window(now, preferences.wake_time):
        return SessionRecommendation(
            recommendation_type="standard",
            reason="Morning warmup session",
            suggested_minutes=MORNING_MINUTES,
            new_concepts_allowed=MORNING_NEW_CONCEPTS,
        )

    return SessionRecommendation(
        recommendation_type="standard",
        reason="Good time for learning",
        suggested_minutes=STANDARD_MINUTES,
        new_concepts_allowed=MAX_NEW_CONCEPTS,
    )


__all__ = [
    "is_past_bedtime",
    "is_within_morning_window",
    "is_within_sleep_window",
    "parse_clock",
    "recommend_session",
]
