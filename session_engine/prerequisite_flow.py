"""Async controller that drives the prerequisite state machine."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import CollaboratorError, StateError, StoreError
from .gap_analysis import analyze_gaps
from .grading import is_answer_correct
from .models import MiniLesson, Prerequisite, PretestAnswer, PretestQuestion
from .prerequisite_machine import (
    MiniLessonClosed,
    MiniLessonCompleted,
    MiniLessonOpened,
    Phase,
    PrerequisiteCheckFailed,
    PrerequisiteEvent,
    PrerequisiteState,
    PrerequisitesLoaded,
    PretestCompleted,
    PretestSkipped,
    PretestStarted,
    ProceedToLearning,
    transition,
)
from .store import ContentStore
from .telemetry import emit_session_event
from .text_generation import GenerationOptions, TextGenerator, generate_structured

logger = logging.getLogger(__name__)

READING_WORDS_PER_MINUTE = 200

MINI_LESSON_SYSTEM_PROMPT = (
    "You are an expert educational content creator. Write a brief mini-lesson that teaches a prerequisite "
    "concept to someone who missed it on a pretest. Use two or three short paragraphs in markdown, explain what "
    "the concept is and why it matters, and list the key points to remember in clear, accessible language."
)


@dataclass(frozen=True)
class Transition:
    from_phase: Phase
    to_phase: Phase
    event: str
    state: PrerequisiteState


class MiniLessonDraft(BaseModel):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    key_points: List[str] = Field(default_factory=list)


def grade_pretest(
    questions: Sequence[PretestQuestion],
    responses: Mapping[str, str],
    *,
    settings: Optional[Settings] = None,
) -> List[PretestAnswer]:
    """Unanswered questions count as incorrect."""
    answers = []
    for item in questions:
        raw = responses.get(item.question_id)
        correct = raw is not None and is_answer_correct(item.question, raw, settings=settings)
        answers.append(
            PretestAnswer(question_id=item.question_id, prerequisite_id=item.prerequisite_id, is_correct=correct)
        )
    return answers


def fallback_mini_lesson(prerequisite: Prerequisite) -> MiniLesson:
    description = prerequisite.description.strip()
    content = description or f"{prerequisite.name} is a foundational idea the upcoming material builds on."
    return MiniLesson(
        prerequisite_id=prerequisite.prerequisite_id,
        title=prerequisite.name,
        content=content,
        key_points=[description] if description else [],
        estimated_minutes=1,
        generated=False,
    )


class PrerequisiteFlow:
    """Runs the pretest flow for one learner session.

    Collaborator suspension happens here; every state change goes through the
    pure ``transition`` function. Invalid events raise ``StateError`` when
    ``strict_state`` is on, otherwise they are logged and ignored. After
    ``cancel`` the flow is frozen: results that were in flight are discarded
    and new calls are rejected.
    """

    def __init__(
        self,
        store: ContentStore,
        *,
        generator: Optional[TextGenerator] = None,
        settings: Optional[Settings] = None,
        session_id: str = "",
    ) -> None:
        self._store = store
        self._generator = generator
        self._settings = settings or get_settings()
        self._session_id = session_id
        self._state = PrerequisiteState()
        self._lessons: Dict[str, MiniLesson] = {}
        self._cancelled = False

    @property
    def state(self) -> PrerequisiteState:
        return self._state

    @property
    def did_skip_pretest(self) -> bool:
        return self._state.did_skip_pretest

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def _ensure_open(self) -> bool:
        if not self._cancelled:
            return True
        if self._settings.strict_state:
            raise StateError("Session has been cancelled", "session_cancelled")
        logger.warning("Ignoring prerequisite call on cancelled session %s", self._session_id)
        return False

    def _is_stale(self, operation: str) -> bool:
        if not self._cancelled:
            return False
        logger.info("Discarding late %s result for cancelled session %s", operation, self._session_id)
        emit_session_event("late_result_discarded", self._session_id, operation=operation)
        return True

    def dispatch(self, event: PrerequisiteEvent) -> List[Transition]:
        if not self._ensure_open():
            return []
        previous = self._state
        try:
            updated = transition(previous, event)
        except StateError:
            if self._settings.strict_state:
                raise
            logger.warning(
                "Ignoring %s in phase %s for session %s",
                type(event).__name__,
                previous.phase,
                self._session_id,
            )
            return []

        self._state = updated
        record = Transition(
            from_phase=previous.phase,
            to_phase=updated.phase,
            event=type(event).__name__,
            state=updated,
        )
        emit_session_event(
            "prerequisite_transition",
            self._session_id,
            from_phase=record.from_phase,
            to_phase=record.to_phase,
            trigger=record.event,
            did_skip_pretest=updated.did_skip_pretest,
        )
        return [record]

    async def check_prerequisites(self, project_id: str) -> List[Transition]:
        """A failing prerequisite lookup never blocks the learner."""
        if not self._ensure_open():
            return []
        failure: Optional[str] = None
        prerequisites: List[Prerequisite] = []
        try:
            prerequisites = await self._store.load_prerequisites(project_id)
        except (StoreError, CollaboratorError) as exc:
            logger.warning("Prerequisite check failed for project %s: %s", project_id, exc)
            failure = str(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected prerequisite lookup failure for project %s", project_id)
            failure = f"{type(exc).__name__}: {exc}"

        if self._is_stale("prerequisites"):
            return []
        if failure is not None:
            return self.dispatch(PrerequisiteCheckFailed(reason=failure))
        return self.dispatch(PrerequisitesLoaded(prerequisites=tuple(prerequisites)))

    async def pretest_questions(self, project_id: str) -> List[PretestQuestion]:
        if not self._ensure_open():
            return []
        wanted = {prerequisite.prerequisite_id for prerequisite in self._state.prerequisites}
        questions = await self._store.load_pretest_questions(project_id)
        return [question for question in questions if question.prerequisite_id in wanted]

    def start_pretest(self) -> List[Transition]:
        return self.dispatch(PretestStarted())

    def skip_pretest(self) -> List[Transition]:
        return self.dispatch(PretestSkipped())

    async def complete_pretest(self, answers: Sequence[PretestAnswer]) -> List[Transition]:
        analysis = analyze_gaps(answers)
        logger.info(
            "Pretest complete for session %s: %s%% (%s gaps)",
            self._session_id,
            analysis.percentage,
            len(analysis.gaps),
        )
        return self.dispatch(PretestCompleted(analysis=analysis))

    async def open_mini_lesson(self, prerequisite_id: str) -> List[Transition]:
        transitions = self.dispatch(MiniLessonOpened(prerequisite_id=prerequisite_id))
        if transitions:
            await self.mini_lesson(prerequisite_id)
        return transitions

    def complete_mini_lesson(self, prerequisite_id: str) -> List[Transition]:
        return self.dispatch(MiniLessonCompleted(prerequisite_id=prerequisite_id))

    def close_mini_lesson(self) -> List[Transition]:
        return self.dispatch(MiniLessonClosed())

    def proceed_to_learning(self) -> List[Transition]:
        return self.dispatch(ProceedToLearning())

    def _prerequisite(self, prerequisite_id: str) -> Prerequisite:
        for prerequisite in self._state.prerequisites:
            if prerequisite.prerequisite_id == prerequisite_id:
                return prerequisite
        return Prerequisite(prerequisite_id=prerequisite_id, name=prerequisite_id)

    async def mini_lesson(self, prerequisite_id: str) -> MiniLesson:
        """Generated lesson for a gap, cached per session; falls back to the description."""
        prerequisite = self._prerequisite(prerequisite_id)
        if not self._ensure_open():
            return fallback_mini_lesson(prerequisite)
        cached = self._lessons.get(prerequisite_id)
        if cached is not None:
            return cached

        lesson = fallback_mini_lesson(prerequisite)
        if self._generator is not None:
            message = json.dumps(
                {"name": prerequisite.name, "context": prerequisite.description or None},
                ensure_ascii=False,
            )
            try:
                result = await generate_structured(
                    self._generator,
                    MINI_LESSON_SYSTEM_PROMPT,
                    message,
                    MiniLessonDraft,
                    GenerationOptions(temperature=0.5),
                )
            except CollaboratorError as exc:
                logger.warning(
                    "Mini-lesson generation failed for prerequisite %s (%s); using fallback lesson",
                    prerequisite_id,
                    exc.code,
                )
            else:
                draft = result.data
                words = len(draft.content.split())
                lesson = MiniLesson(
                    prerequisite_id=prerequisite_id,
                    title=draft.title,
                    content=draft.content,
                    key_points=draft.key_points,
                    estimated_minutes=max(1, math.ceil(words / READING_WORDS_PER_MINUTE)),
                    generated=True,
                )

        if self._is_stale("mini_lesson"):
            return lesson
        self._lessons[prerequisite_id] = lesson
        return lesson


__all__ = [
    "MiniLessonDraft",
    "PrerequisiteFlow",
    "Transition",
    "fallback_mini_lesson",
    "grade_pretest",
]
