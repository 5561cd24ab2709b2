"""Cognitive capacity model.

Converts momentary learner signals into a session item budget. Every curve is
total: inputs outside their documented range are clamped, never rejected.

effective = base x circadian x sleep x fatigue, rounded half-up and clamped to
[1, floor(base x 1.5)].
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from .config import Settings, get_settings
from .models import CapacitySignals, CognitiveCapacity, WarningLevel

logger = logging.getLogger(__name__)

MAX_CAPACITY_FACTOR = 1.5

# (start_hour, end_hour, modifier); late night (22:00-05:59) falls through.
CIRCADIAN_WINDOWS = (
    (6, 9, 0.9),
    (9, 12, 1.1),
    (12, 14, 0.85),
    (14, 17, 1.0),
    (17, 20, 0.95),
    (20, 22, 0.8),
)
LATE_NIGHT_MODIFIER = 0.7

MIN_SLEEP_MODIFIER = 0.6
FULL_REST_HOURS = 8.0
POOR_SLEEP_HOURS = 4.0

FATIGUE_INTERVAL_MINUTES = 15
FATIGUE_PER_INTERVAL = 0.05
MAX_FATIGUE = 0.3


def circadian_modifier(hour: int) -> float:
    clamped = max(0, min(23, int(hour)))
    for start, end, modifier in CIRCADIAN_WINDOWS:
        if start <= clamped < end:
            return modifier
    return LATE_NIGHT_MODIFIER


def sleep_modifier(hours_slept: Optional[float]) -> float:
    """Linear from 0.6 at four hours or less up to 1.0 at eight hours or more."""
    if hours_slept is None:
        return 1.0
    hours = max(POOR_SLEEP_HOURS, min(FULL_REST_HOURS, float(hours_slept)))
    span = FULL_REST_HOURS - POOR_SLEEP_HOURS
    return round(MIN_SLEEP_MODIFIER + (1.0 - MIN_SLEEP_MODIFIER) * (hours - POOR_SLEEP_HOURS) / span, 4)


def fatigue_modifier(session_minutes: float) -> float:
    minutes = max(0.0, float(session_minutes))
    intervals = math.floor(minutes / FATIGUE_INTERVAL_MINUTES)
    fatigue = min(intervals * FATIGUE_PER_INTERVAL, MAX_FATIGUE)
    return round(1.0 - fatigue, 4)


def warning_level(percentage_used: float, *, settings: Optional[Settings] = None) -> WarningLevel:
    resolved = settings or get_settings()
    if percentage_used >= resolved.high_warning_percent:
        return "high"
    if percentage_used >= resolved.moderate_warning_percent:
        return "moderate"
    return "none"


def compute_capacity(
    signals: CapacitySignals,
    *,
    settings: Optional[Settings] = None,
) -> CognitiveCapacity:
    resolved = settings or get_settings()
    base = resolved.base_capacity

    circadian = circadian_modifier(signals.local_hour)
    sleep = sleep_modifier(signals.hours_slept)
    fatigue = fatigue_modifier(signals.session_minutes)

    raw = base * circadian * sleep * fatigue
    ceiling = max(1, math.floor(base * MAX_CAPACITY_FACTOR))
    effective = max(1, min(ceiling, math.floor(raw + 0.5)))

    used = max(0, signals.items_in_progress)
    percentage = round(used / effective * 100.0, 2)
    level = warning_level(percentage, settings=resolved)

    capacity = CognitiveCapacity(
        base_capacity=base,
        circadian_modifier=circadian,
        sleep_modifier=sleep,
        fatigue_modifier=fatigue,
        effective_capacity=effective,
        percentage_used=percentage,
        can_learn_new=level != "high",
        warning_level=level,
    )
    logger.debug("Computed capacity %s from signals %s", capacity.effective_capacity, signals.model_dump())
    return capacity


__all__ = [
    "circadian_modifier",
    "compute_capacity",
    "fatigue_modifier",
    "sleep_modifier",
    "warning_level",
]
