"""Online usefulness aggregates per (user, interaction type, cognitive type).

All averages are streaming means (``mean += (x - mean) / n``); no raw
history is kept.

engagement = 0.4 completion + 0.2 time score + 0.2 (1 - hint rate) + 0.2 (1 - retry rate)
usefulness = 0.6 normalize(retention lift) + 0.4 engagement
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .config import Settings, get_settings
from .models import CognitiveType, InteractionTypeUsefulness, SandboxEvaluationResult, SandboxInteractionType
from .telemetry import emit_event

logger = logging.getLogger(__name__)

RETENTION_WEIGHT = 0.6
ENGAGEMENT_WEIGHT = 0.4

COMPLETION_WEIGHT = 0.4
TIME_WEIGHT = 0.2
HINT_WEIGHT = 0.2
RETRY_WEIGHT = 0.2

AggregateKey = Tuple[str, str, str]


@dataclass
class RunningMean:
    count: int = 0
    mean: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.mean += (value - self.mean) / self.count


@dataclass
class _Aggregate:
    completion: RunningMean
    time_ratio: RunningMean
    hint_rate: RunningMean
    retry_rate: RunningMean
    sandbox_retention: RunningMean

    @classmethod
    def empty(cls) -> "_Aggregate":
        return cls(RunningMean(), RunningMean(), RunningMean(), RunningMean(), RunningMean())


def time_score(time_ratio: float) -> float:
    """1.0 at or under baseline, falling linearly to 0.0 at twice the baseline."""
    return max(0.0, min(1.0, 2.0 - time_ratio))


def normalize_lift(lift: float) -> float:
    return (max(-1.0, min(1.0, lift)) + 1.0) / 2.0


class UsefulnessTracker:
    """Feedback loop consumed by sandbox placement.

    ``sample_size`` is the number of sandbox results behind an aggregate; the
    tracker flags small samples as low confidence but leaves the
    explore/exploit decision to its callers.
    """

    def __init__(self, *, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._aggregates: Dict[AggregateKey, _Aggregate] = {}
        self._sandboxed: Dict[Tuple[str, str], Tuple[str, str]] = {}
        self._quiz_baseline: Dict[str, RunningMean] = {}
        self._concept_scores: Dict[Tuple[str, str], RunningMean] = {}

    def record_sandbox_result(self, user_id: str, result: SandboxEvaluationResult) -> InteractionTypeUsefulness:
        key = (user_id, result.interaction_type, result.cognitive_type)
        aggregate = self._aggregates.setdefault(key, _Aggregate.empty())
        ratio = result.time_to_complete_ms / result.baseline_time_ms if result.baseline_time_ms > 0 else 1.0
        aggregate.completion.add(1.0 if result.passed else 0.0)
        aggregate.time_ratio.add(ratio)
        aggregate.hint_rate.add(1.0 if result.hints_used > 0 else 0.0)
        aggregate.retry_rate.add(1.0 if result.attempt_count > 1 else 0.0)
        self._sandboxed[(user_id, result.concept_id)] = (result.interaction_type, result.cognitive_type)
        self._concept_scores.setdefault((user_id, result.concept_id), RunningMean()).add(result.score)

        snapshot = self._snapshot(key, aggregate)
        emit_event(
            "usefulness_updated",
            user_id=user_id,
            interaction_type=result.interaction_type,
            cognitive_type=result.cognitive_type,
            usefulness_score=snapshot.usefulness_score,
            sample_size=snapshot.sample_size,
        )
        return snapshot

    def record_review(self, user_id: str, concept_id: str, is_correct: bool) -> Optional[InteractionTypeUsefulness]:
        """Feed a later review outcome into retention.

        Reviews of sandboxed concepts update that interaction type's retention;
        every other review updates the learner's quiz-only baseline.
        """
        outcome = 1.0 if is_correct else 0.0
        origin = self._sandboxed.get((user_id, concept_id))
        if origin is None:
            self._quiz_baseline.setdefault(user_id, RunningMean()).add(outcome)
            return None

        key = (user_id, origin[0], origin[1])
        aggregate = self._aggregates.setdefault(key, _Aggregate.empty())
        aggregate.sandbox_retention.add(outcome)
        snapshot = self._snapshot(key, aggregate)
        logger.debug("Retention updated for %s: lift=%.3f", key, snapshot.retention_lift)
        return snapshot

    def get(
        self,
        user_id: str,
        interaction_type: SandboxInteractionType,
        cognitive_type: CognitiveType,
    ) -> Optional[InteractionTypeUsefulness]:
        key = (user_id, interaction_type, cognitive_type)
        aggregate = self._aggregates.get(key)
        if aggregate is None:
            return None
        return self._snapshot(key, aggregate)

    def concept_scores(self, user_id: str) -> Dict[str, float]:
        """Mean sandbox score per concept the learner has practised."""
        return {
            concept_id: round(mean.mean, 4)
            for (owner, concept_id), mean in sorted(self._concept_scores.items())
            if owner == user_id
        }

    def snapshot(self, user_id: str) -> List[InteractionTypeUsefulness]:
        return [
            self._snapshot(key, aggregate)
            for key, aggregate in sorted(self._aggregates.items())
            if key[0] == user_id
        ]

    def _retention_lift(self, user_id: str, aggregate: _Aggregate) -> float:
        baseline = self._quiz_baseline.get(user_id)
        if aggregate.sandbox_retention.count == 0 or baseline is None or baseline.count == 0:
            return 0.0
        return max(-1.0, min(1.0, aggregate.sandbox_retention.mean - baseline.mean))

    def _snapshot(self, key: AggregateKey, aggregate: _Aggregate) -> InteractionTypeUsefulness:
        user_id, interaction_type, cognitive_type = key
        sample_size = aggregate.completion.count
        if sample_size:
            engagement = (
                COMPLETION_WEIGHT * aggregate.completion.mean
                + TIME_WEIGHT * time_score(aggregate.time_ratio.mean)
                + HINT_WEIGHT * (1.0 - aggregate.hint_rate.mean)
                + RETRY_WEIGHT * (1.0 - aggregate.retry_rate.mean)
            )
        else:
            engagement = 0.0
        lift = self._retention_lift(user_id, aggregate)
        usefulness = RETENTION_WEIGHT * normalize_lift(lift) + ENGAGEMENT_WEIGHT * engagement
        return InteractionTypeUsefulness(
            user_id=user_id,
            interaction_type=interaction_type,  # type: ignore[arg-type]
            cognitive_type=cognitive_type,  # type: ignore[arg-type]
            retention_lift=round(lift, 4),
            engagement_score=round(max(0.0, min(1.0, engagement)), 4),
            usefulness_score=round(max(0.0, min(1.0, usefulness)), 4),
            sample_size=sample_size,
            retention_samples=aggregate.sandbox_retention.count,
            is_low_confidence=sample_size < self._settings.usefulness_min_samples,
        )


__all__ = ["RunningMean", "UsefulnessTracker", "normalize_lift", "time_score"]
