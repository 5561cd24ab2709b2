"""Data models shared across the session scheduling engine."""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

MasteryState = Literal["unseen", "learning", "review", "mastered"]
QuestionType = Literal["multiple_choice", "true_false", "free_text"]
CognitiveType = Literal["declarative", "procedural", "conceptual", "conditional", "metacognitive"]
BloomLevel = Literal["remember", "understand", "apply", "analyze", "evaluate", "create"]
WarningLevel = Literal["none", "moderate", "high"]
BuildOutcome = Literal["ready", "nothing_to_learn"]

SandboxInteractionType = Literal["matching", "fill_in_blank", "sequencing", "diagram_build", "branching"]
EvaluationMode = Literal["deterministic", "ai_assisted"]
SandboxElementType = Literal["draggable", "dropzone", "text_input", "connector", "label"]
PlacementSource = Literal["advisor", "fallback"]

GapRecommendation = Literal["proceed", "review_suggested", "review_required"]
RecommendationType = Literal["standard", "review_only", "skip"]
SessionType = Literal["standard", "review_only"]


class Rating(IntEnum):
    """Four-level recall quality consumed by the spaced-repetition store."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


class SampleQuestion(BaseModel):
    question_id: str
    question_type: QuestionType = "free_text"
    prompt: str
    correct_answer: str
    options: List[str] = Field(default_factory=list)
    explanation: Optional[str] = None


class Concept(BaseModel):
    """Read-only concept produced by the content pipeline."""

    concept_id: str
    name: str
    definition: str = ""
    tier: int = Field(default=2, ge=1, le=3)
    cognitive_type: CognitiveType = "declarative"
    bloom_level: Optional[BloomLevel] = None
    prerequisite_ids: List[str] = Field(default_factory=list)
    questions: List[SampleQuestion] = Field(default_factory=list)


class MasteryRecord(BaseModel):
    user_id: str
    concept_id: str
    state: MasteryState = "unseen"
    due_at: Optional[datetime] = None
    review_count: int = Field(default=0, ge=0)


class CapacitySignals(BaseModel):
    """Momentary learner signals. Out-of-range values are clamped, never rejected."""

    hours_slept: Optional[float] = None
    local_hour: int = 12
    session_minutes: float = 0.0
    items_in_progress: int = 0


class CognitiveCapacity(BaseModel):
    base_capacity: int
    circadian_modifier: float
    sleep_modifier: float
    fatigue_modifier: float
    effective_capacity: int = Field(ge=1)
    percentage_used: float = Field(default=0.0, ge=0.0)
    can_learn_new: bool = True
    warning_level: WarningLevel = "none"


class SleepPreferences(BaseModel):
    bedtime: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    wake_time: str = Field(pattern=r"^\d{1,2}:\d{2}$")


class SessionRecommendation(BaseModel):
    recommendation_type: RecommendationType
    reason: str
    suggested_minutes: int = Field(ge=0)
    new_concepts_allowed: int = Field(ge=0)


# --------------------------------------------------------------------------
# Sandbox interactions


class SandboxElement(BaseModel):
    element_id: str
    element_type: SandboxElementType
    content: str
    draggable: bool = False


class Connection(BaseModel):
    source: str
    target: str


class CorrectState(BaseModel):
    zone_contents: Optional[Dict[str, List[str]]] = None
    sequence: Optional[List[str]] = None
    connections: Optional[List[Connection]] = None
    text_answer: Optional[str] = None
    min_correct_percentage: float = Field(default=0.7, ge=0.0, le=1.0)


class SandboxRubric(BaseModel):
    criteria: List[str] = Field(default_factory=list)
    exemplars: List[str] = Field(default_factory=list)


class SandboxInteraction(BaseModel):
    interaction_id: str
    concept_id: str
    cognitive_type: CognitiveType = "declarative"
    interaction_type: SandboxInteractionType = "matching"
    instructions: str
    elements: List[SandboxElement] = Field(default_factory=list)
    correct_state: CorrectState
    evaluation_mode: EvaluationMode = "deterministic"
    rubric: Optional[SandboxRubric] = None
    hints: List[str] = Field(default_factory=list)
    estimated_time_seconds: int = Field(default=90, ge=0)


class SandboxSubmission(BaseModel):
    zone_contents: Dict[str, List[str]] = Field(default_factory=dict)
    sequence: List[str] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    text_response: Optional[str] = None
    attempt_count: int = Field(default=1, ge=1)
    hints_used: int = Field(default=0, ge=0)
    gave_up: bool = False


class ElementResult(BaseModel):
    element_id: str
    correct: bool
    expected_zone: Optional[str] = None
    actual_zone: Optional[str] = None


class SandboxEvaluationResult(BaseModel):
    interaction_id: str
    concept_id: str
    interaction_type: SandboxInteractionType
    cognitive_type: CognitiveType
    score: float = Field(ge=0.0, le=1.0)
    passed: bool
    attempt_count: int
    hints_used: int
    time_to_complete_ms: int
    baseline_time_ms: float
    rating: Rating
    feedback: str
    element_results: List[ElementResult] = Field(default_factory=list)
    semantic_score: Optional[float] = None


class InteractionTypeUsefulness(BaseModel):
    user_id: str
    interaction_type: SandboxInteractionType
    cognitive_type: CognitiveType
    retention_lift: float = Field(default=0.0, ge=-1.0, le=1.0)
    engagement_score: float = Field(default=0.0, ge=0.0, le=1.0)
    usefulness_score: float = Field(default=0.0, ge=0.0, le=1.0)
    sample_size: int = Field(default=0, ge=0)
    retention_samples: int = Field(default=0, ge=0)
    is_low_confidence: bool = True


# --------------------------------------------------------------------------
# Prerequisites


class Prerequisite(BaseModel):
    prerequisite_id: str
    name: str
    description: str = ""
    concept_id: Optional[str] = None


class PretestQuestion(BaseModel):
    question_id: str
    prerequisite_id: str
    question: SampleQuestion


class PretestAnswer(BaseModel):
    question_id: str
    prerequisite_id: str
    is_correct: bool


class PrerequisiteGapAnalysis(BaseModel):
    total_prerequisites: int = Field(ge=0)
    correct_count: int = Field(ge=0)
    percentage: int = Field(ge=0, le=100)
    recommendation: GapRecommendation
    gaps: List[str] = Field(default_factory=list)


class MiniLesson(BaseModel):
    prerequisite_id: str
    title: str
    content: str
    key_points: List[str] = Field(default_factory=list)
    estimated_minutes: int = Field(default=1, ge=1)
    generated: bool = True


# --------------------------------------------------------------------------
# Session items


class ReviewItem(BaseModel):
    kind: Literal["review"] = "review"
    item_id: str
    concept_id: str
    question: SampleQuestion

    @property
    def concept_ids(self) -> List[str]:
        return [self.concept_id]


class NewItem(BaseModel):
    kind: Literal["new"] = "new"
    item_id: str
    concept_id: str
    concept_name: str
    definition: str = ""
    questions: List[SampleQuestion] = Field(default_factory=list)

    @property
    def concept_ids(self) -> List[str]:
        return [self.concept_id]


class SynthesisItem(BaseModel):
    kind: Literal["synthesis"] = "synthesis"
    item_id: str
    concept_ids: List[str] = Field(min_length=1)
    prompt: str


class SandboxItem(BaseModel):
    kind: Literal["sandbox"] = "sandbox"
    item_id: str
    concept_id: str
    interaction: SandboxInteraction
    source: PlacementSource = "fallback"
    confidence: Optional[float] = None

    @property
    def concept_ids(self) -> List[str]:
        return [self.concept_id]


class PretestItem(BaseModel):
    """Quick check shown right before the new concept it belongs to."""

    kind: Literal["pretest"] = "pretest"
    item_id: str
    concept_id: str
    question: SampleQuestion

    @property
    def concept_ids(self) -> List[str]:
        return [self.concept_id]


SessionItem = Annotated[
    Union[ReviewItem, NewItem, SynthesisItem, SandboxItem, PretestItem],
    Field(discriminator="kind"),
]


class SandboxDeferral(BaseModel):
    """Recorded when a sandbox-eligible session could not afford a sandbox."""

    reason: str
    effective_capacity: int
    minimum_capacity: int
    concept_ids: List[str] = Field(default_factory=list)


class SessionPreview(BaseModel):
    review_count: int = 0
    new_count: int = 0
    synthesis_count: int = 0
    sandbox_count: int = 0
    pretest_count: int = 0
    estimated_minutes: int = 0
    session_type: SessionType = "review_only"


class SessionPlan(BaseModel):
    session_id: str
    user_id: str
    project_id: str
    outcome: BuildOutcome
    items: List[SessionItem] = Field(default_factory=list)
    capacity: CognitiveCapacity
    recommendation: Optional[SessionRecommendation] = None
    sandbox_deferral: Optional[SandboxDeferral] = None
    preview: SessionPreview = Field(default_factory=SessionPreview)


class GradeResult(BaseModel):
    item_id: Optional[str] = None
    is_correct: bool
    rating: Optional[Rating] = None
    score: Optional[float] = None
    feedback: Optional[str] = None


class SessionComplete(BaseModel):
    complete: Literal[True] = True
    answered_count: int = 0
    correct_count: int = 0


__all__ = [
    "BloomLevel",
    "BuildOutcome",
    "CapacitySignals",
    "CognitiveCapacity",
    "CognitiveType",
    "Concept",
    "Connection",
    "CorrectState",
    "ElementResult",
    "GradeResult",
    "InteractionTypeUsefulness",
    "MasteryRecord",
    "MasteryState",
    "MiniLesson",
    "NewItem",
    "Prerequisite",
    "PrerequisiteGapAnalysis",
    "PretestAnswer",
    "PretestItem",
    "PretestQuestion",
    "Rating",
    "ReviewItem",
    "SampleQuestion",
    "SandboxDeferral",
    "SandboxElement",
    "SandboxEvaluationResult",
    "SandboxInteraction",
    "SandboxInteractionType",
    "SandboxItem",
    "SandboxRubric",
    "SandboxSubmission",
    "SessionComplete",
    "SessionItem",
    "SessionPlan",
    "SessionPreview",
    "SessionRecommendation",
    "SleepPreferences",
    "SynthesisItem",
    "WarningLevel",
]
