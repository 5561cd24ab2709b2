"""REST endpoints that drive a learner session: build, answer, advance, cancel, prerequisites."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Literal, Optional, Union
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from .errors import CollaboratorError, EngineError, EngineValidationError, StateError, StoreError
from .models import (
    CapacitySignals,
    GradeResult,
    MiniLesson,
    PrerequisiteGapAnalysis,
    PretestQuestion,
    SandboxSubmission,
    SessionPlan,
    SleepPreferences,
)
from .prerequisite_flow import Transition, grade_pretest
from .session_runtime import LearningSession

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, str, str], LearningSession]


class SessionRegistry:
    """In-process map of live sessions keyed by session id."""

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._sessions: Dict[str, LearningSession] = {}

    def create(self, user_id: str, project_id: str, session_id: Optional[str] = None) -> LearningSession:
        key = session_id or uuid4().hex
        session = self._factory(key, user_id, project_id)
        self._sessions[key] = session
        return session

    def get(self, session_id: str) -> Optional[LearningSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[LearningSession]:
        return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


def _status_for(exc: EngineError) -> int:
    if isinstance(exc, EngineValidationError):
        return 422
    if isinstance(exc, StateError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, StoreError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, CollaboratorError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(exc: EngineError) -> HTTPException:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.warning("Session request failed (%s): %s", exc.code, exc)
    return HTTPException(status_code=status_code, detail=exc.to_detail())


def _ignored(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"code": "ignored", "message": message, "retryable": False},
    )


def _session_or_404(registry: SessionRegistry, session_id: str) -> LearningSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session {session_id}")
    return session


class CreateSessionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    signals: CapacitySignals = Field(default_factory=CapacitySignals)
    sleep_preferences: Optional[SleepPreferences] = None
    session_id: Optional[str] = None
    progress_offset: int = Field(default=0, ge=0)
    last_synthesis_at: int = Field(default=0, ge=0)
    recent_accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class BuildSessionRequest(BaseModel):
    signals: CapacitySignals = Field(default_factory=CapacitySignals)
    sleep_preferences: Optional[SleepPreferences] = None
    progress_offset: int = Field(default=0, ge=0)
    last_synthesis_at: int = Field(default=0, ge=0)
    recent_accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class AnswerRequest(BaseModel):
    item_id: str
    answer: Union[str, SandboxSubmission]
    elapsed_ms: int = Field(default=0, ge=0)


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool = True


PrerequisiteEventName = Literal[
    "start_pretest",
    "skip_pretest",
    "complete_pretest",
    "open_mini_lesson",
    "complete_mini_lesson",
    "close_mini_lesson",
    "proceed",
]


class PrerequisiteEventRequest(BaseModel):
    event: PrerequisiteEventName
    prerequisite_id: Optional[str] = None
    responses: Dict[str, str] = Field(default_factory=dict)


class TransitionPayload(BaseModel):
    from_phase: str
    to_phase: str
    event: str


class PrerequisiteResponse(BaseModel):
    phase: str
    did_skip_pretest: bool
    prerequisite_ids: List[str] = Field(default_factory=list)
    gap_analysis: Optional[PrerequisiteGapAnalysis] = None
    current_lesson_id: Optional[str] = None
    completed_lessons: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    transitions: List[TransitionPayload] = Field(default_factory=list)
    mini_lesson: Optional[MiniLesson] = None


def _prerequisite_response(
    session: LearningSession,
    transitions: List[Transition],
    mini_lesson: Optional[MiniLesson] = None,
) -> PrerequisiteResponse:
    state = session.prerequisites.state
    return PrerequisiteResponse(
        phase=state.phase,
        did_skip_pretest=state.did_skip_pretest,
        prerequisite_ids=[prerequisite.prerequisite_id for prerequisite in state.prerequisites],
        gap_analysis=state.gap_analysis,
        current_lesson_id=state.current_lesson_id,
        completed_lessons=sorted(state.completed_lessons),
        error=state.error,
        transitions=[
            TransitionPayload(from_phase=record.from_phase, to_phase=record.to_phase, event=record.event)
            for record in transitions
        ],
        mini_lesson=mini_lesson,
    )


@router.post("", response_model=SessionPlan, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: CreateSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionPlan:
    if payload.session_id and registry.get(payload.session_id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Session {payload.session_id} already exists")
    session = registry.create(payload.user_id, payload.project_id, payload.session_id)
    try:
        plan = await session.build_session(
            payload.signals,
            sleep_preferences=payload.sleep_preferences,
            progress_offset=payload.progress_offset,
            last_synthesis_at=payload.last_synthesis_at,
            recent_accuracy=payload.recent_accuracy,
        )
    except EngineError as exc:
        registry.remove(session.session_id)
        raise _http_error(exc) from exc
    if plan is None:
        registry.remove(session.session_id)
        raise _ignored("Session build was not completed")
    return plan


@router.post("/{session_id}/build", response_model=SessionPlan)
async def rebuild_session(
    session_id: str,
    payload: BuildSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionPlan:
    session = _session_or_404(registry, session_id)
    try:
        plan = await session.build_session(
            payload.signals,
            sleep_preferences=payload.sleep_preferences,
            progress_offset=payload.progress_offset,
            last_synthesis_at=payload.last_synthesis_at,
            recent_accuracy=payload.recent_accuracy,
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    if plan is None:
        raise _ignored("A build is already in progress for this session")
    return plan


@router.get("/{session_id}", response_model=SessionPlan)
def read_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> SessionPlan:
    session = _session_or_404(registry, session_id)
    if session.plan is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} has no plan yet")
    return session.plan


@router.post("/{session_id}/answers", response_model=GradeResult)
async def submit_answer(
    session_id: str,
    payload: AnswerRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> GradeResult:
    session = _session_or_404(registry, session_id)
    try:
        result = await session.submit_answer(payload.item_id, payload.answer, payload.elapsed_ms)
    except EngineError as exc:
        raise _http_error(exc) from exc
    if result is None:
        raise _ignored(f"Answer for {payload.item_id} was not applied")
    return result


@router.post("/{session_id}/advance")
def advance_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> Dict[str, Any]:
    session = _session_or_404(registry, session_id)
    try:
        result = session.advance()
    except EngineError as exc:
        raise _http_error(exc) from exc
    if result is None:
        raise _ignored("Advance was not applied")
    return result.model_dump(mode="json")


@router.delete("/{session_id}", response_model=CancelResponse)
def cancel_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> CancelResponse:
    session = _session_or_404(registry, session_id)
    session.cancel()
    registry.remove(session_id)
    return CancelResponse(session_id=session_id)


@router.post("/{session_id}/prerequisites/check", response_model=PrerequisiteResponse)
async def check_prerequisites(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> PrerequisiteResponse:
    session = _session_or_404(registry, session_id)
    try:
        transitions = await session.check_prerequisites()
    except EngineError as exc:
        raise _http_error(exc) from exc
    return _prerequisite_response(session, transitions)


@router.get("/{session_id}/prerequisites/questions", response_model=List[PretestQuestion])
async def pretest_questions(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> List[PretestQuestion]:
    session = _session_or_404(registry, session_id)
    try:
        return await session.prerequisites.pretest_questions(session.project_id)
    except EngineError as exc:
        raise _http_error(exc) from exc


@router.post("/{session_id}/prerequisites/events", response_model=PrerequisiteResponse)
async def prerequisite_event(
    session_id: str,
    payload: PrerequisiteEventRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> PrerequisiteResponse:
    session = _session_or_404(registry, session_id)
    flow = session.prerequisites
    lesson: Optional[MiniLesson] = None
    try:
        if payload.event == "start_pretest":
            transitions = flow.start_pretest()
        elif payload.event == "skip_pretest":
            transitions = flow.skip_pretest()
        elif payload.event == "complete_pretest":
            questions = await flow.pretest_questions(session.project_id)
            answers = grade_pretest(questions, payload.responses, settings=session.settings)
            transitions = await flow.complete_pretest(answers)
        elif payload.event == "close_mini_lesson":
            transitions = flow.close_mini_lesson()
        elif payload.event == "proceed":
            transitions = flow.proceed_to_learning()
        else:
            if not payload.prerequisite_id:
                raise EngineValidationError(f"{payload.event} requires a prerequisite_id")
            if payload.event == "open_mini_lesson":
                transitions = await flow.open_mini_lesson(payload.prerequisite_id)
                if transitions:
                    lesson = await flow.mini_lesson(payload.prerequisite_id)
            else:
                transitions = flow.complete_mini_lesson(payload.prerequisite_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return _prerequisite_response(session, transitions, lesson)


__all__ = ["SessionRegistry", "get_registry", "router"]
