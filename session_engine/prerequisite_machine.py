"""Prerequisite assessment state machine.

checking -> offer | learning
offer -> pretest | learning (skip)
pretest -> gaps | learning
gaps -> mini_lesson | learning
mini_lesson -> gaps

``transition`` is pure: every (state, event) pair either yields exactly one
new state or raises ``StateError``. Suspension lives in the event producers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Literal, Optional, Tuple, Union

from .errors import StateError
from .models import Prerequisite, PrerequisiteGapAnalysis

Phase = Literal["checking", "offer", "pretest", "gaps", "mini_lesson", "learning"]


@dataclass(frozen=True)
class PrerequisiteState:
    phase: Phase = "checking"
    prerequisites: Tuple[Prerequisite, ...] = ()
    gap_analysis: Optional[PrerequisiteGapAnalysis] = None
    current_lesson_id: Optional[str] = None
    completed_lessons: FrozenSet[str] = field(default_factory=frozenset)
    did_skip_pretest: bool = False
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase == "learning"


@dataclass(frozen=True)
class PrerequisitesLoaded:
    prerequisites: Tuple[Prerequisite, ...]


@dataclass(frozen=True)
class PrerequisiteCheckFailed:
    reason: str


@dataclass(frozen=True)
class PretestStarted:
    pass


@dataclass(frozen=True)
class PretestSkipped:
    pass


@dataclass(frozen=True)
class PretestCompleted:
    analysis: PrerequisiteGapAnalysis


@dataclass(frozen=True)
class MiniLessonOpened:
    prerequisite_id: str


@dataclass(frozen=True)
class MiniLessonCompleted:
    prerequisite_id: str


@dataclass(frozen=True)
class MiniLessonClosed:
    pass


@dataclass(frozen=True)
class ProceedToLearning:
    pass


PrerequisiteEvent = Union[
    PrerequisitesLoaded,
    PrerequisiteCheckFailed,
    PretestStarted,
    PretestSkipped,
    PretestCompleted,
    MiniLessonOpened,
    MiniLessonCompleted,
    MiniLessonClosed,
    ProceedToLearning,
]


def _reject(state: PrerequisiteState, event: PrerequisiteEvent) -> StateError:
    return StateError(f"Event {type(event).__name__} is not allowed in phase '{state.phase}'")


def transition(state: PrerequisiteState, event: PrerequisiteEvent) -> PrerequisiteState:
    phase = state.phase

    if phase == "checking":
        if isinstance(event, PrerequisitesLoaded):
            prerequisites = tuple(event.prerequisites)
            return replace(state, phase="offer" if prerequisites else "learning", prerequisites=prerequisites)
        if isinstance(event, PrerequisiteCheckFailed):
            return replace(state, phase="learning", error=event.reason)

    elif phase == "offer":
        if isinstance(event, PretestStarted):
            return replace(state, phase="pretest")
        if isinstance(event, PretestSkipped):
            return replace(state, phase="learning", did_skip_pretest=True)

    elif phase == "pretest":
        if isinstance(event, PretestSkipped):
            return replace(state, phase="learning", did_skip_pretest=True)
        if isinstance(event, PretestCompleted):
            next_phase: Phase = "gaps" if event.analysis.gaps else "learning"
            return replace(state, phase=next_phase, gap_analysis=event.analysis)

    elif phase == "gaps":
        if isinstance(event, MiniLessonOpened):
            gaps = state.gap_analysis.gaps if state.gap_analysis else []
            if event.prerequisite_id not in gaps:
                raise StateError(f"Prerequisite {event.prerequisite_id} is not an identified gap")
            return replace(state, phase="mini_lesson", current_lesson_id=event.prerequisite_id)
        if isinstance(event, ProceedToLearning):
            return replace(state, phase="learning")

    elif phase == "mini_lesson":
        if isinstance(event, MiniLessonCompleted):
            if event.prerequisite_id != state.current_lesson_id:
                raise StateError(f"Mini-lesson {event.prerequisite_id} is not the open lesson")
            return replace(
                state,
                phase="gaps",
                current_lesson_id=None,
                completed_lessons=state.completed_lessons | {event.prerequisite_id},
            )
        if isinstance(event, MiniLessonClosed):
            return replace(state, phase="gaps", current_lesson_id=None)

    raise _reject(state, event)


__all__ = [
    "MiniLessonClosed",
    "MiniLessonCompleted",
    "MiniLessonOpened",
    "Phase",
    "PrerequisiteCheckFailed",
    "PrerequisiteEvent",
    "PrerequisiteState",
    "PrerequisitesLoaded",
    "PretestCompleted",
    "PretestSkipped",
    "PretestStarted",
    "ProceedToLearning",
    "transition",
]
