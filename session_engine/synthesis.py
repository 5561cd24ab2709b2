"""Interval-based synthesis detection and prompt generation."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import CollaboratorError, EngineValidationError
from .models import Concept, SessionItem, SynthesisItem
from .telemetry import emit_event
from .text_generation import GenerationOptions, TextGenerator, generate_structured

logger = logging.getLogger(__name__)

SYNTHESIS_SYSTEM_PROMPT = (
    "You are an expert educational content creator specializing in synthesis questions that help learners "
    "connect concepts. Write one open-ended but focused prompt asking the learner to explain how the listed "
    "concepts relate, through comparison or application. Keep it encouraging and focused on understanding "
    "rather than rote memorization. Only reference the concept ids you were given."
)


class SynthesisPromptResult(BaseModel):
    prompt: str = Field(min_length=1)
    concepts_to_connect: List[str] = Field(default_factory=list)
    connection_explanation: str = ""


@dataclass(frozen=True)
class SynthesisInsertion:
    items: List[SessionItem]
    inserted: int
    skipped: int
    last_synthesis_at: int


class SynthesisDetector:
    """Decides when a synthesis prompt is due and asks the generator for one.

    The interval is redrawn from ``synthesis_intervals`` every time a trigger
    fires. Pass a seeded ``random.Random`` to make the draws reproducible.
    """

    def __init__(
        self,
        generator: Optional[TextGenerator] = None,
        *,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._generator = generator
        self._settings = settings or get_settings()
        self._rng = rng or random.Random()
        self._intervals = list(self._settings.synthesis_intervals) or [5, 6]
        self._current_interval = self._draw_interval()

    def _draw_interval(self) -> int:
        return self._rng.choice(self._intervals)

    def get_next_synthesis_interval(self) -> int:
        return self._current_interval

    def should_insert_synthesis(self, progress_count: int, last_synthesis_at: int) -> bool:
        if progress_count <= 0:
            return False
        if progress_count - last_synthesis_at >= self._current_interval:
            self._current_interval = self._draw_interval()
            return True
        return False

    async def generate_synthesis_prompt(self, recent_concepts: Sequence[Concept]) -> SynthesisPromptResult:
        minimum = self._settings.synthesis_min_concepts
        if len(recent_concepts) < minimum:
            raise EngineValidationError(
                f"Need at least {minimum} concepts for synthesis, got {len(recent_concepts)}",
                "invalid_concepts",
            )
        if self._generator is None:
            raise CollaboratorError("No text generator configured for synthesis", "generation_failed")

        selected = list(recent_concepts)[: self._settings.synthesis_max_concepts]
        payload = [
            {"id": concept.concept_id, "name": concept.name, "definition": concept.definition or None}
            for concept in selected
        ]
        message = (
            "Create a synthesis prompt connecting these concepts the learner has studied:\n"
            f"{json.dumps(payload, ensure_ascii=False, indent=2)}"
        )
        options = GenerationOptions(model=self._settings.synthesis_model, temperature=0.7)
        try:
            result = await generate_structured(
                self._generator,
                SYNTHESIS_SYSTEM_PROMPT,
                message,
                SynthesisPromptResult,
                options,
            )
        except CollaboratorError as exc:
            raise CollaboratorError(
                f"Failed to generate synthesis prompt: {exc}",
                "generation_failed",
                cause=exc,
                status_code=exc.status_code,
            ) from exc

        allowed = [concept.concept_id for concept in selected]
        connected = [concept_id for concept_id in result.data.concepts_to_connect if concept_id in allowed]
        return result.data.model_copy(update={"concepts_to_connect": connected or allowed})

    def plan_slots(
        self,
        items: Sequence[SessionItem],
        *,
        progress_offset: int = 0,
        last_synthesis_at: int = 0,
    ) -> Tuple[List[Tuple[int, List[str]]], int, int]:
        """Walk items as progress units and collect (position, concept ids) slots.

        Returns the slots, the number of windows skipped for lack of concepts,
        and the updated ``last_synthesis_at``.
        """
        slots: List[Tuple[int, List[str]]] = []
        skipped = 0
        covered: List[str] = []
        for index, item in enumerate(items):
            for concept_id in item.concept_ids:
                if concept_id in covered:
                    covered.remove(concept_id)
                covered.append(concept_id)
            progress = progress_offset + index + 1
            if not self.should_insert_synthesis(progress, last_synthesis_at):
                continue
            last_synthesis_at = progress
            recent = list(reversed(covered))[: self._settings.synthesis_max_concepts]
            if len(recent) < self._settings.synthesis_min_concepts:
                skipped += 1
                logger.info(
                    "Skipping synthesis at progress %s: only %s concepts covered",
                    progress,
                    len(recent),
                )
                emit_event("synthesis_skipped", position=index + 1, reason="insufficient_concepts", concepts=len(recent))
                continue
            slots.append((index + 1, recent))
        return slots, skipped, last_synthesis_at

    async def insert_synthesis(
        self,
        items: Sequence[SessionItem],
        concepts: Dict[str, Concept],
        *,
        progress_offset: int = 0,
        last_synthesis_at: int = 0,
    ) -> SynthesisInsertion:
        slots, skipped, last_at = self.plan_slots(
            items,
            progress_offset=progress_offset,
            last_synthesis_at=last_synthesis_at,
        )
        if not slots:
            return SynthesisInsertion(items=list(items), inserted=0, skipped=skipped, last_synthesis_at=last_at)

        results = await asyncio.gather(
            *(
                self.generate_synthesis_prompt([concepts[concept_id] for concept_id in concept_ids if concept_id in concepts])
                for _, concept_ids in slots
            ),
            return_exceptions=True,
        )

        sequence = list(items)
        inserted = 0
        for (position, concept_ids), outcome in sorted(zip(slots, results), key=lambda pair: pair[0][0], reverse=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, (CollaboratorError, EngineValidationError)):
                    raise outcome
                skipped += 1
                logger.warning(
                    "Synthesis prompt generation failed at position %s (%s); omitting slot",
                    position,
                    outcome.code,
                )
                emit_event("synthesis_skipped", position=position, reason=outcome.code, concepts=len(concept_ids))
                continue
            item = SynthesisItem(
                item_id=f"synthesis-{position}",
                concept_ids=outcome.concepts_to_connect,
                prompt=outcome.prompt,
            )
            sequence.insert(position, item)
            inserted += 1
            emit_event("synthesis_inserted", position=position, concept_ids=outcome.concepts_to_connect)

        return SynthesisInsertion(items=sequence, inserted=inserted, skipped=skipped, last_synthesis_at=last_at)


__all__ = [
    "SynthesisDetector",
    "SynthesisInsertion",
    "SynthesisPromptResult",
]
