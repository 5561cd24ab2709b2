"""Sandbox placement: advisor-driven with a deterministic fallback.

Every session covering at least one sandbox-eligible concept gets at least one
sandbox item, unless effective capacity is below the configured minimum, in
which case the sandbox is deferred and the deferral is reported.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import CollaboratorError
from .models import (
    CognitiveCapacity,
    CognitiveType,
    Concept,
    Connection,
    CorrectState,
    InteractionTypeUsefulness,
    MasteryRecord,
    MasteryState,
    SandboxDeferral,
    SandboxElement,
    SandboxInteraction,
    SandboxInteractionType,
    SandboxItem,
    SessionItem,
    SynthesisItem,
)
from .telemetry import emit_session_event
from .text_generation import GenerationOptions, TextGenerator, generate_structured

logger = logging.getLogger(__name__)

FALLBACK_INTERACTION: SandboxInteractionType = "matching"

INTERACTION_BY_COGNITIVE_TYPE: Dict[str, SandboxInteractionType] = {
    "declarative": "matching",
    "procedural": "sequencing",
    "conceptual": "fill_in_blank",
    "metacognitive": "fill_in_blank",
    "conditional": "branching",
}

_SENTENCE_SPLIT = re.compile(r"(?<=[.;])\s+")

_Blueprint = Tuple[List[SandboxElement], CorrectState, str]


def interaction_type_for(cognitive_type: Optional[str]) -> SandboxInteractionType:
    return INTERACTION_BY_COGNITIVE_TYPE.get(cognitive_type or "", FALLBACK_INTERACTION)


def _matching(concept: Concept) -> _Blueprint:
    term_id = f"term-{concept.concept_id}"
    zone_id = f"zone-{concept.concept_id}"
    elements = [
        SandboxElement(element_id=term_id, element_type="draggable", content=concept.name, draggable=True),
        SandboxElement(element_id=zone_id, element_type="dropzone", content=(concept.definition or "Definition")[:80]),
    ]
    state = CorrectState(zone_contents={zone_id: [term_id]}, min_correct_percentage=0.8)
    return elements, state, f"Match the term with its definition for {concept.name}."


def _sequencing(concept: Concept) -> _Blueprint:
    steps = [part.strip() for part in _SENTENCE_SPLIT.split(concept.definition or "") if part.strip()]
    if len(steps) < 2:
        steps = [f"Recall what {concept.name} is", f"Explain how {concept.name} works", f"Apply {concept.name}"]
    steps = steps[:5]
    elements = [
        SandboxElement(element_id=f"step-{index}", element_type="draggable", content=step, draggable=True)
        for index, step in enumerate(steps)
    ]
    state = CorrectState(sequence=[element.element_id for element in elements], min_correct_percentage=0.7)
    return elements, state, f"Put the steps of {concept.name} in the correct order."


def _fill_in_blank(concept: Concept) -> _Blueprint:
    elements = [
        SandboxElement(element_id=f"prompt-{concept.concept_id}", element_type="label", content=concept.name),
        SandboxElement(element_id=f"answer-{concept.concept_id}", element_type="text_input", content=""),
    ]
    state = CorrectState(text_answer=concept.definition or concept.name, min_correct_percentage=0.6)
    return elements, state, f"In your own words, explain what {concept.name} means."


def _branching(concept: Concept) -> _Blueprint:
    start = f"situation-{concept.concept_id}"
    good = f"apply-{concept.concept_id}"
    bad = f"ignore-{concept.concept_id}"
    outcome = f"outcome-{concept.concept_id}"
    elements = [
        SandboxElement(element_id=start, element_type="label", content=f"A situation where {concept.name} matters"),
        SandboxElement(element_id=good, element_type="connector", content=f"Apply {concept.name}"),
        SandboxElement(element_id=bad, element_type="connector", content=f"Ignore {concept.name}"),
        SandboxElement(element_id=outcome, element_type="label", content="Desired outcome"),
    ]
    state = CorrectState(
        connections=[Connection(source=start, target=good), Connection(source=good, target=outcome)],
        min_correct_percentage=1.0,
    )
    return elements, state, f"Choose the path that correctly applies {concept.name}."


def build_sandbox_interaction(
    concept: Concept,
    interaction_type: Optional[SandboxInteractionType] = None,
    *,
    index: int = 0,
) -> SandboxInteraction:
    """Basic interaction for a concept; the type follows its cognitive type unless given."""
    resolved_type = interaction_type or interaction_type_for(concept.cognitive_type)
    if resolved_type == "sequencing":
        elements, state, instructions = _sequencing(concept)
    elif resolved_type == "fill_in_blank":
        elements, state, instructions = _fill_in_blank(concept)
    elif resolved_type == "branching":
        elements, state, instructions = _branching(concept)
    else:
        elements, state, instructions = _matching(concept)

    return SandboxInteraction(
        interaction_id=f"sandbox-{concept.concept_id}-{index}",
        concept_id=concept.concept_id,
        cognitive_type=concept.cognitive_type,
        interaction_type=resolved_type,
        instructions=instructions,
        elements=elements,
        correct_state=state,
        evaluation_mode="ai_assisted" if state.text_answer is not None else "deterministic",
        hints=[f"Think about what {concept.name} means.", "Try relating it to something you already know."],
        estimated_time_seconds=60 + 15 * sum(1 for element in elements if element.draggable),
    )


# --------------------------------------------------------------------------
# Advisor contract


class PlacementItemSummary(BaseModel):
    index: int
    kind: str
    concept_ids: List[str] = Field(default_factory=list)


class CoveredConcept(BaseModel):
    concept_id: str
    name: str
    tier: int
    cognitive_type: CognitiveType
    mastery_state: MasteryState = "unseen"


class PlacementContext(BaseModel):
    items: List[PlacementItemSummary] = Field(default_factory=list)
    covered_concepts: List[CoveredConcept] = Field(default_factory=list)
    prior_scores: Dict[str, float] = Field(default_factory=dict)
    interaction_preferences: List[InteractionTypeUsefulness] = Field(default_factory=list)
    min_count: int = 1
    max_count: int = 3


class PlacementDecision(BaseModel):
    insert_after_index: int
    concept_ids: List[str] = Field(min_length=1)
    interaction_type: SandboxInteractionType
    confidence: float = Field(ge=0.0, le=1.0)


class PlacementResponse(BaseModel):
    decisions: List[PlacementDecision] = Field(default_factory=list)


class PlacementAdvisor(Protocol):
    async def decide_placements(self, context: PlacementContext) -> List[PlacementDecision]:
        ...


PLACEMENT_SYSTEM_PROMPT = (
    "You place interactive sandbox exercises inside a learning session. Given the ordered session items, the "
    "concepts they cover, the learner's prior sandbox performance and how useful each interaction type has been "
    "for them, choose between min_count and max_count placements. Prefer interaction types with high usefulness "
    "scores, but treat low-confidence scores as worth exploring. Report a confidence between 0 and 1 for each "
    "decision."
)


class TextGenerationPlacementAdvisor:
    """PlacementAdvisor backed by a text generator's structured output."""

    def __init__(self, generator: TextGenerator, *, settings: Optional[Settings] = None) -> None:
        self._generator = generator
        self._settings = settings or get_settings()

    async def decide_placements(self, context: PlacementContext) -> List[PlacementDecision]:
        options = GenerationOptions(model=self._settings.placement_model, temperature=0.2)
        try:
            result = await generate_structured(
                self._generator,
                PLACEMENT_SYSTEM_PROMPT,
                json.dumps(context.model_dump(mode="json"), ensure_ascii=False, indent=2),
                PlacementResponse,
                options,
            )
        except CollaboratorError as exc:
            raise CollaboratorError(
                f"Placement advisor call failed: {exc}",
                "placement_failed",
                cause=exc,
                status_code=exc.status_code,
            ) from exc
        return list(result.data.decisions)


# --------------------------------------------------------------------------
# Placement


@dataclass(frozen=True)
class _Placement:
    insert_after_index: int
    concept: Concept
    interaction_type: SandboxInteractionType
    source: Literal["advisor", "fallback"]
    confidence: Optional[float] = None


@dataclass(frozen=True)
class PlacementOutcome:
    items: List[SessionItem]
    placed: int
    source: Literal["advisor", "fallback", "deferred", "none"]
    deferral: Optional[SandboxDeferral] = None


def eligible_concepts(items: Sequence[SessionItem], concepts: Dict[str, Concept]) -> List[Concept]:
    """Concepts covered by the session, in first-covered order."""
    seen: List[str] = []
    for item in items:
        if isinstance(item, (SandboxItem, SynthesisItem)):
            continue
        for concept_id in item.concept_ids:
            if concept_id in concepts and concept_id not in seen:
                seen.append(concept_id)
    return [concepts[concept_id] for concept_id in seen]


def fallback_placement(items: Sequence[SessionItem], concepts: Dict[str, Concept]) -> Optional[_Placement]:
    """One matching sandbox on the highest-tier covered concept, after the last synthesis."""
    candidates = eligible_concepts(items, concepts)
    if not candidates:
        return None
    most_complex = max(candidates, key=lambda concept: concept.tier)
    synthesis_positions = [index for index, item in enumerate(items) if isinstance(item, SynthesisItem)]
    anchor = synthesis_positions[-1] if synthesis_positions else len(items) - 1
    return _Placement(
        insert_after_index=anchor,
        concept=most_complex,
        interaction_type=FALLBACK_INTERACTION,
        source="fallback",
    )


class SandboxPlacer:
    def __init__(self, advisor: Optional[PlacementAdvisor] = None, *, settings: Optional[Settings] = None) -> None:
        self._advisor = advisor
        self._settings = settings or get_settings()

    def _context(
        self,
        items: Sequence[SessionItem],
        candidates: Sequence[Concept],
        mastery: Dict[str, MasteryRecord],
        prior_scores: Dict[str, float],
        preferences: Sequence[InteractionTypeUsefulness],
    ) -> PlacementContext:
        return PlacementContext(
            items=[
                PlacementItemSummary(index=index, kind=item.kind, concept_ids=list(item.concept_ids))
                for index, item in enumerate(items)
            ],
            covered_concepts=[
                CoveredConcept(
                    concept_id=concept.concept_id,
                    name=concept.name,
                    tier=concept.tier,
                    cognitive_type=concept.cognitive_type,
                    mastery_state=mastery[concept.concept_id].state if concept.concept_id in mastery else "unseen",
                )
                for concept in candidates
            ],
            prior_scores=dict(prior_scores),
            interaction_preferences=list(preferences),
            min_count=self._settings.sandbox_min_count,
            max_count=self._settings.sandbox_max_count,
        )

    def _accept(
        self,
        decisions: Sequence[PlacementDecision],
        items: Sequence[SessionItem],
        candidates: Sequence[Concept],
    ) -> List[_Placement]:
        by_id = {concept.concept_id: concept for concept in candidates}
        accepted: List[_Placement] = []
        ranked = sorted(decisions, key=lambda decision: decision.confidence, reverse=True)
        for decision in ranked:
            if decision.confidence < self._settings.placement_confidence_threshold:
                logger.info("Dropping placement with confidence %.2f", decision.confidence)
                continue
            if not 0 <= decision.insert_after_index < len(items):
                logger.info("Dropping placement at out-of-range index %s", decision.insert_after_index)
                continue
            concept = next((by_id[concept_id] for concept_id in decision.concept_ids if concept_id in by_id), None)
            if concept is None:
                logger.info("Dropping placement for uncovered concepts %s", decision.concept_ids)
                continue
            accepted.append(
                _Placement(
                    insert_after_index=decision.insert_after_index,
                    concept=concept,
                    interaction_type=decision.interaction_type,
                    source="advisor",
                    confidence=decision.confidence,
                )
            )
            if len(accepted) >= self._settings.sandbox_max_count:
                break
        return accepted

    async def place(
        self,
        items: Sequence[SessionItem],
        concepts: Dict[str, Concept],
        *,
        capacity: CognitiveCapacity,
        mastery: Optional[Dict[str, MasteryRecord]] = None,
        prior_scores: Optional[Dict[str, float]] = None,
        preferences: Sequence[InteractionTypeUsefulness] = (),
        session_id: str = "",
    ) -> PlacementOutcome:
        candidates = eligible_concepts(items, concepts)
        if not candidates:
            return PlacementOutcome(items=list(items), placed=0, source="none")

        minimum = self._settings.sandbox_min_capacity
        if capacity.effective_capacity < minimum:
            deferral = SandboxDeferral(
                reason="capacity_below_minimum",
                effective_capacity=capacity.effective_capacity,
                minimum_capacity=minimum,
                concept_ids=[concept.concept_id for concept in candidates],
            )
            logger.info(
                "Deferring sandbox for session %s: capacity %s below minimum %s",
                session_id,
                capacity.effective_capacity,
                minimum,
            )
            emit_session_event(
                "sandbox_deferred",
                session_id,
                effective_capacity=capacity.effective_capacity,
                minimum_capacity=minimum,
                concept_ids=deferral.concept_ids,
            )
            return PlacementOutcome(items=list(items), placed=0, source="deferred", deferral=deferral)

        placements: List[_Placement] = []
        if self._advisor is not None and self._settings.placement_mode == "advisor":
            context = self._context(items, candidates, mastery or {}, prior_scores or {}, preferences)
            try:
                decisions = await self._advisor.decide_placements(context)
            except CollaboratorError as exc:
                logger.warning("Placement advisor failed for session %s (%s); using fallback", session_id, exc.code)
                emit_session_event("sandbox_placement_fallback", session_id, reason=exc.code)
            else:
                placements = self._accept(decisions, items, candidates)
                if not placements:
                    logger.info("No confident placement decisions for session %s; using fallback", session_id)
                    emit_session_event("sandbox_placement_fallback", session_id, reason="low_confidence")

        if not placements:
            fallback = fallback_placement(items, concepts)
            if fallback is not None:
                placements = [fallback]

        sequence = list(items)
        ordered = sorted(enumerate(placements), key=lambda pair: pair[1].insert_after_index, reverse=True)
        for number, placement in ordered:
            interaction = build_sandbox_interaction(placement.concept, placement.interaction_type, index=number)
            sequence.insert(
                placement.insert_after_index + 1,
                SandboxItem(
                    item_id=f"sandbox-{placement.concept.concept_id}-{number}",
                    concept_id=placement.concept.concept_id,
                    interaction=interaction,
                    source=placement.source,
                    confidence=placement.confidence,
                ),
            )
            emit_session_event(
                "sandbox_placed",
                session_id,
                concept_id=placement.concept.concept_id,
                interaction_type=placement.interaction_type,
                insert_after_index=placement.insert_after_index,
                source=placement.source,
                confidence=placement.confidence,
            )

        source = placements[0].source if placements else "none"
        return PlacementOutcome(items=sequence, placed=len(placements), source=source)


__all__ = [
    "CoveredConcept",
    "PlacementAdvisor",
    "PlacementContext",
    "PlacementDecision",
    "PlacementItemSummary",
    "PlacementOutcome",
    "PlacementResponse",
    "SandboxPlacer",
    "TextGenerationPlacementAdvisor",
    "build_sandbox_interaction",
    "eligible_concepts",
    "fallback_placement",
    "interaction_type_for",
]
