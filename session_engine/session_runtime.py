"""Per-learner session runtime: build, answer, advance, cancel.

State is scoped to one ``LearningSession`` instance. Builds are guarded
against re-entry, and cancellation bumps an epoch so that collaborator results
arriving afterwards are discarded instead of mutating the torn-down session.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .capacity import compute_capacity
from .config import Settings, get_settings
from .errors import EngineValidationError, StateError, StateErrorCode, StoreError
from .grading import grade
from .models import (
    CapacitySignals,
    Concept,
    GradeResult,
    MasteryRecord,
    NewItem,
    PretestItem,
    ReviewItem,
    SandboxItem,
    SandboxSubmission,
    SessionComplete,
    SessionItem,
    SessionPlan,
    SleepPreferences,
    SynthesisItem,
)
from .prerequisite_flow import PrerequisiteFlow, Transition
from .sandbox_evaluation import SandboxEvaluator
from .sandbox_placement import SandboxPlacer
from .session_builder import build, collect_pools, preview
from .sleep_schedule import recommend_session
from .store import ContentStore
from .synthesis import SynthesisDetector
from .telemetry import emit_session_event
from .usefulness import UsefulnessTracker

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LearningSession:
    def __init__(
        self,
        *,
        session_id: str,
        user_id: str,
        project_id: str,
        store: ContentStore,
        settings: Optional[Settings] = None,
        synthesis: Optional[SynthesisDetector] = None,
        placer: Optional[SandboxPlacer] = None,
        evaluator: Optional[SandboxEvaluator] = None,
        usefulness: Optional[UsefulnessTracker] = None,
        prerequisites: Optional[PrerequisiteFlow] = None,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.project_id = project_id
        self._store = store
        self._settings = settings or get_settings()
        self._synthesis = synthesis
        self._placer = placer
        self._evaluator = evaluator or SandboxEvaluator(settings=self._settings)
        self._usefulness = usefulness
        self._prerequisites = prerequisites or PrerequisiteFlow(
            store,
            settings=self._settings,
            session_id=session_id,
        )
        self._clock = clock
        self._rng = rng or random.Random()

        self._plan: Optional[SessionPlan] = None
        self._cursor = 0
        self._attempts: Dict[str, int] = {}
        self._answered = 0
        self._correct = 0
        self._build_active = False
        self._cancelled = False
        self._epoch = 0

    # ------------------------------------------------------------------
    # Introspection

    @property
    def plan(self) -> Optional[SessionPlan]:
        return self._plan

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def prerequisites(self) -> PrerequisiteFlow:
        return self._prerequisites

    @property
    def did_skip_pretest(self) -> bool:
        return self._prerequisites.did_skip_pretest

    @property
    def current_item(self) -> Optional[SessionItem]:
        if self._plan is None or self._cancelled or self._cursor >= len(self._plan.items):
            return None
        return self._plan.items[self._cursor]

    def is_build_active(self) -> bool:
        return self._build_active

    # ------------------------------------------------------------------
    # Helpers

    def _state_error(self, message: str, code: StateErrorCode = "invalid_transition") -> None:
        """Raise in strict mode; otherwise log and let the caller ignore the call."""
        if self._settings.strict_state:
            raise StateError(message, code)
        logger.warning("Ignoring invalid operation on session %s: %s", self.session_id, message)

    def _accuracy(self) -> Optional[float]:
        if not self._answered:
            return None
        return self._correct / self._answered

    def _is_stale(self, epoch: int, operation: str) -> bool:
        if epoch == self._epoch and not self._cancelled:
            return False
        logger.info("Discarding late %s result for cancelled session %s", operation, self.session_id)
        emit_session_event("late_result_discarded", self.session_id, operation=operation)
        return True

    async def _load(self) -> Tuple[List[Concept], Dict[str, MasteryRecord]]:
        try:
            concepts = await self._store.load_concepts(self.project_id)
            mastery = await self._store.load_mastery_states(self.project_id, self.user_id)
        except StoreError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise StoreError(f"Failed to load session content: {exc}", "load_failed", cause=exc) from exc
        return concepts, mastery or {}

    async def _save(self, operation: Callable[[], Any]) -> None:
        try:
            await operation()
        except StoreError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise StoreError(f"Failed to save session result: {exc}", "save_failed", cause=exc) from exc

    # ------------------------------------------------------------------
    # Prerequisites

    async def check_prerequisites(self) -> List[Transition]:
        if self._cancelled:
            self._state_error("Session has been cancelled", "session_cancelled")
            return []
        return await self._prerequisites.check_prerequisites(self.project_id)

    # ------------------------------------------------------------------
    # Build

    async def build_session(
        self,
        signals: CapacitySignals,
        *,
        sleep_preferences: Optional[SleepPreferences] = None,
        progress_offset: int = 0,
        last_synthesis_at: int = 0,
        recent_accuracy: Optional[float] = None,
    ) -> Optional[SessionPlan]:
        """Build the ordered item sequence for this session.

        Returns ``None`` when a build is already in flight or the session was
        cancelled before the build finished. Store failures propagate as
        ``StoreError`` so the caller can offer a retry.
        """
        if self._cancelled:
            self._state_error("Session has been cancelled", "session_cancelled")
            return None
        if self._build_active:
            logger.info("Build already in progress for session %s; ignoring request", self.session_id)
            emit_session_event("session_build_ignored", self.session_id)
            return None

        self._build_active = True
        epoch = self._epoch
        try:
            return await self._build(
                epoch,
                signals,
                sleep_preferences=sleep_preferences,
                progress_offset=progress_offset,
                last_synthesis_at=last_synthesis_at,
                recent_accuracy=recent_accuracy,
            )
        finally:
            self._build_active = False

    async def _build(
        self,
        epoch: int,
        signals: CapacitySignals,
        *,
        sleep_preferences: Optional[SleepPreferences],
        progress_offset: int,
        last_synthesis_at: int,
        recent_accuracy: Optional[float],
    ) -> Optional[SessionPlan]:
        capacity = compute_capacity(signals, settings=self._settings)
        emit_session_event(
            "capacity_computed",
            self.session_id,
            effective_capacity=capacity.effective_capacity,
            percentage_used=capacity.percentage_used,
            warning_level=capacity.warning_level,
        )
        recommendation = recommend_session(self._clock(), sleep_preferences) if sleep_preferences else None

        concepts, mastery = await self._load()
        if self._is_stale(epoch, "build"):
            return None

        by_id = {concept.concept_id: concept for concept in concepts}
        review_pool, new_pool = collect_pools(
            concepts,
            mastery,
            now=self._clock(),
            questions_per_new_concept=self._settings.questions_per_new_concept,
            capacity=capacity,
            recent_accuracy=recent_accuracy if recent_accuracy is not None else self._accuracy(),
            rng=self._rng,
        )
        new_limit: Optional[int] = recommendation.new_concepts_allowed if recommendation else None
        if not capacity.can_learn_new:
            new_limit = 0
        items: List[SessionItem] = build(
            review_pool,
            new_pool,
            capacity.effective_capacity,
            new_limit=new_limit,
            pretest_checks=self._settings.pretest_checks,
        )

        deferral = None
        if items:
            if self._synthesis is not None:
                insertion = await self._synthesis.insert_synthesis(
                    items,
                    by_id,
                    progress_offset=progress_offset,
                    last_synthesis_at=last_synthesis_at,
                )
                if self._is_stale(epoch, "synthesis"):
                    return None
                items = insertion.items
            if self._placer is not None:
                outcome = await self._placer.place(
                    items,
                    by_id,
                    capacity=capacity,
                    mastery=mastery,
                    prior_scores=self._usefulness.concept_scores(self.user_id) if self._usefulness else None,
                    preferences=self._usefulness.snapshot(self.user_id) if self._usefulness else (),
                    session_id=self.session_id,
                )
                if self._is_stale(epoch, "placement"):
                    return None
                items = outcome.items
                deferral = outcome.deferral
        else:
            logger.info("Nothing to learn for user %s in project %s", self.user_id, self.project_id)

        plan = SessionPlan(
            session_id=self.session_id,
            user_id=self.user_id,
            project_id=self.project_id,
            outcome="ready" if items else "nothing_to_learn",
            items=items,
            capacity=capacity,
            recommendation=recommendation,
            sandbox_deferral=deferral,
            preview=preview(items),
        )
        self._plan = plan
        self._cursor = 0
        self._attempts.clear()
        self._answered = 0
        self._correct = 0
        emit_session_event(
            "session_built",
            self.session_id,
            outcome=plan.outcome,
            item_count=len(items),
            review_count=plan.preview.review_count,
            new_count=plan.preview.new_count,
            synthesis_count=plan.preview.synthesis_count,
            sandbox_count=plan.preview.sandbox_count,
        )
        return plan

    # ------------------------------------------------------------------
    # Answers

    async def submit_answer(
        self,
        item_id: str,
        raw_answer: Union[str, SandboxSubmission, Mapping[str, Any]],
        elapsed_ms: int,
    ) -> Optional[GradeResult]:
        if self._cancelled:
            self._state_error("Session has been cancelled", "session_cancelled")
            return None
        item = self.current_item
        if item is None or item.item_id != item_id:
            self._state_error(f"Item {item_id} is not the active item", "no_active_item")
            return None

        epoch = self._epoch
        attempt = self._attempts.get(item_id, 0)

        if isinstance(item, SandboxItem):
            result = await self._submit_sandbox(item, raw_answer, elapsed_ms, epoch)
        elif isinstance(item, SynthesisItem):
            text = raw_answer if isinstance(raw_answer, str) else ""
            result = GradeResult(is_correct=bool(text.strip()), rating=None, score=None)
        else:
            result = await self._submit_quiz(item, raw_answer, elapsed_ms, attempt, epoch)

        if result is None or self._is_stale(epoch, "answer"):
            return None

        result = result.model_copy(update={"item_id": item_id})
        self._attempts[item_id] = attempt + 1
        self._answered += 1
        if result.is_correct:
            self._correct += 1
        emit_session_event(
            "answer_graded",
            self.session_id,
            item=item,
            is_correct=result.is_correct,
            rating=result.rating,
            elapsed_ms=elapsed_ms,
        )
        return result

    async def _submit_quiz(
        self,
        item: Union[ReviewItem, NewItem, PretestItem],
        raw_answer: Any,
        elapsed_ms: int,
        attempt: int,
        epoch: int,
    ) -> Optional[GradeResult]:
        if not isinstance(raw_answer, str):
            raise EngineValidationError("Quiz answers must be text")
        if isinstance(item, NewItem):
            if not item.questions:
                raise EngineValidationError(f"New concept {item.concept_id} has no questions to answer")
            question = item.questions[attempt % len(item.questions)]
        else:
            question = item.question

        result = grade(question, raw_answer, elapsed_ms=elapsed_ms, settings=self._settings)
        if isinstance(item, PretestItem) or result.rating is None:
            return result

        rating = result.rating
        await self._save(lambda: self._store.record_rating(self.user_id, item.concept_id, rating))
        if self._is_stale(epoch, "rating"):
            return None
        if self._usefulness is not None and isinstance(item, ReviewItem):
            self._usefulness.record_review(self.user_id, item.concept_id, result.is_correct)
        return result

    async def _submit_sandbox(
        self,
        item: SandboxItem,
        raw_answer: Any,
        elapsed_ms: int,
        epoch: int,
    ) -> Optional[GradeResult]:
        if isinstance(raw_answer, SandboxSubmission):
            submission = raw_answer
        elif isinstance(raw_answer, Mapping):
            submission = SandboxSubmission.model_validate(raw_answer)
        else:
            raise EngineValidationError("Sandbox answers must be a structured submission")

        evaluation = await self._evaluator.evaluate(item.interaction, submission, elapsed_ms)
        if self._is_stale(epoch, "sandbox_evaluation"):
            return None

        await self._save(lambda: self._store.record_sandbox_result(self.user_id, evaluation))
        await self._save(lambda: self._store.record_rating(self.user_id, item.concept_id, evaluation.rating))
        if self._is_stale(epoch, "sandbox_result"):
            return None
        if self._usefulness is not None:
            self._usefulness.record_sandbox_result(self.user_id, evaluation)

        return GradeResult(
            is_correct=evaluation.passed,
            rating=evaluation.rating,
            score=evaluation.score,
            feedback=evaluation.feedback,
        )

    # ------------------------------------------------------------------
    # Navigation

    def advance(self) -> Optional[Union[SessionItem, SessionComplete]]:
        if self._cancelled:
            self._state_error("Session has been cancelled", "session_cancelled")
            return None
        if self._plan is None:
            self._state_error("Session has not been built", "no_active_item")
            return None

        if self._cursor < len(self._plan.items):
            self._cursor += 1
        if self._cursor >= len(self._plan.items):
            return SessionComplete(answered_count=self._answered, correct_count=self._correct)
        return self._plan.items[self._cursor]

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._epoch += 1
        self._prerequisites.cancel()
        logger.info("Cancelled session %s", self.session_id)


__all__ = ["LearningSession"]
