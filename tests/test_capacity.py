from __future__ import annotations

from typing import Optional

import pytest

from conftest import make_settings
from session_engine.capacity import (
    circadian_modifier,
    compute_capacity,
    fatigue_modifier,
    sleep_modifier,
    warning_level,
)
from session_engine.models import CapacitySignals


@pytest.mark.parametrize(
    ("hour", "expected"),
    [(7, 0.9), (10, 1.1), (13, 0.85), (15, 1.0), (18, 0.95), (21, 0.8), (23, 0.7), (3, 0.7)],
)
def test_circadian_windows(hour: int, expected: float) -> None:
    assert circadian_modifier(hour) == expected


def test_circadian_clamps_out_of_range_hours() -> None:
    assert circadian_modifier(-5) == 0.7
    assert circadian_modifier(42) == 0.7


def test_sleep_modifier_is_linear_between_four_and_eight_hours() -> None:
    assert sleep_modifier(None) == 1.0
    assert sleep_modifier(2) == 0.6
    assert sleep_modifier(4) == 0.6
    assert sleep_modifier(6) == 0.8
    assert sleep_modifier(8) == 1.0
    assert sleep_modifier(11) == 1.0


def test_fatigue_steps_every_fifteen_minutes_and_caps() -> None:
    assert fatigue_modifier(0) == 1.0
    assert fatigue_modifier(14.9) == 1.0
    assert fatigue_modifier(15) == 0.95
    assert fatigue_modifier(45) == 0.85
    assert fatigue_modifier(500) == 0.7
    assert fatigue_modifier(-30) == 1.0


def test_late_night_short_sleep_long_session_floors_at_one() -> None:
    settings = make_settings()
    capacity = compute_capacity(
        CapacitySignals(hours_slept=2, local_hour=2, session_minutes=600),
        settings=settings,
    )
    # 4 x 0.7 x 0.6 x 0.7 = 1.176
    assert capacity.effective_capacity == 1


def test_rested_morning_learner_gets_boosted_capacity() -> None:
    settings = make_settings()
    capacity = compute_capacity(CapacitySignals(hours_slept=8, local_hour=10), settings=settings)
    # 4 x 1.1 = 4.4 rounds to 4
    assert capacity.effective_capacity == 4
    assert capacity.circadian_modifier == 1.1
    assert capacity.can_learn_new is True


def test_capacity_never_exceeds_one_and_a_half_times_base() -> None:
    settings = make_settings(base_capacity=10)
    capacity = compute_capacity(CapacitySignals(hours_slept=9, local_hour=10), settings=settings)
    assert capacity.effective_capacity == 11  # 10 x 1.1, below the ceiling of 15

    tiny = compute_capacity(CapacitySignals(local_hour=10), settings=make_settings(base_capacity=1))
    assert tiny.effective_capacity == 1


def test_rounding_is_half_up() -> None:
    # 5 x 0.9 = 4.5 rounds up to 5
    capacity = compute_capacity(CapacitySignals(local_hour=7), settings=make_settings(base_capacity=5))
    assert capacity.effective_capacity == 5


def test_warning_levels_and_new_learning_gate() -> None:
    settings = make_settings()
    assert warning_level(10, settings=settings) == "none"
    assert warning_level(70, settings=settings) == "moderate"
    assert warning_level(90, settings=settings) == "high"

    busy = compute_capacity(CapacitySignals(local_hour=15, items_in_progress=4), settings=settings)
    assert busy.percentage_used == 100.0
    assert busy.warning_level == "high"
    assert busy.can_learn_new is False


def test_compute_capacity_is_deterministic() -> None:
    settings = make_settings()
    signals = CapacitySignals(hours_slept=6.5, local_hour=18, session_minutes=20, items_in_progress=1)
    assert compute_capacity(signals, settings=settings) == compute_capacity(signals, settings=settings)


WARNING_RANK = {"none": 0, "moderate": 1, "high": 2}


@pytest.mark.parametrize("hour", range(24))
@pytest.mark.parametrize("hours_slept", [None, 0, 3, 5.5, 8, 12])
def test_capacity_sweep_floors_at_one_and_warnings_rise_with_load(hour: int, hours_slept: Optional[float]) -> None:
    settings = make_settings()
    for session_minutes in (0, 20, 45, 90, 600):
        ranks = []
        percentages = []
        for items_in_progress in range(8):
            capacity = compute_capacity(
                CapacitySignals(
                    hours_slept=hours_slept,
                    local_hour=hour,
                    session_minutes=session_minutes,
                    items_in_progress=items_in_progress,
                ),
                settings=settings,
            )
            assert capacity.effective_capacity >= 1
            percentages.append(capacity.percentage_used)
            ranks.append(WARNING_RANK[capacity.warning_level])
        assert percentages == sorted(percentages)
        assert ranks == sorted(ranks)
        assert ranks[0] == 0


def test_warning_level_never_drops_as_usage_grows() -> None:
    settings = make_settings()
    ranks = [WARNING_RANK[warning_level(percent / 2, settings=settings)] for percent in range(0, 301)]
    assert ranks == sorted(ranks)
