"""Content and mastery store contract plus an in-memory implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Protocol, Tuple

from .models import (
    Concept,
    MasteryRecord,
    Prerequisite,
    PretestQuestion,
    Rating,
    SandboxEvaluationResult,
)

logger = logging.getLogger(__name__)


class ContentStore(Protocol):
    """External persistence boundary.

    Loads raise ``StoreError`` on failure. Missing mastery rows are not
    failures: absent concepts are simply unseen.
    """

    async def load_concepts(self, project_id: str) -> List[Concept]:
        ...

    async def load_mastery_states(self, project_id: str, user_id: str) -> Dict[str, MasteryRecord]:
        ...

    async def load_prerequisites(self, project_id: str) -> List[Prerequisite]:
        ...

    async def load_pretest_questions(self, project_id: str) -> List[PretestQuestion]:
        ...

    async def record_rating(self, user_id: str, concept_id: str, rating: Rating) -> None:
        ...

    async def record_sandbox_result(self, user_id: str, result: SandboxEvaluationResult) -> None:
        ...


@dataclass(frozen=True)
class RecordedRating:
    user_id: str
    concept_id: str
    rating: Rating


class InMemoryContentStore:
    """Process-local store used for default wiring and tests."""

    def __init__(self) -> None:
        self._concepts: Dict[str, List[Concept]] = {}
        self._mastery: Dict[Tuple[str, str], Dict[str, MasteryRecord]] = {}
        self._prerequisites: Dict[str, List[Prerequisite]] = {}
        self._pretest_questions: Dict[str, List[PretestQuestion]] = {}
        self.ratings: List[RecordedRating] = []
        self.sandbox_results: List[Tuple[str, SandboxEvaluationResult]] = []

    def add_concepts(self, project_id: str, concepts: Iterable[Concept]) -> None:
        self._concepts.setdefault(project_id, []).extend(concept.model_copy(deep=True) for concept in concepts)

    def set_mastery(self, project_id: str, user_id: str, records: Iterable[MasteryRecord]) -> None:
        bucket = self._mastery.setdefault((project_id, user_id), {})
        for record in records:
            bucket[record.concept_id] = record.model_copy(deep=True)

    def add_prerequisites(
        self,
        project_id: str,
        prerequisites: Iterable[Prerequisite],
        questions: Iterable[PretestQuestion] = (),
    ) -> None:
        self._prerequisites.setdefault(project_id, []).extend(prerequisites)
        self._pretest_questions.setdefault(project_id, []).extend(questions)

    async def load_concepts(self, project_id: str) -> List[Concept]:
        return [concept.model_copy(deep=True) for concept in self._concepts.get(project_id, [])]

    async def load_mastery_states(self, project_id: str, user_id: str) -> Dict[str, MasteryRecord]:
        records = self._mastery.get((project_id, user_id), {})
        return {concept_id: record.model_copy(deep=True) for concept_id, record in records.items()}

    async def load_prerequisites(self, project_id: str) -> List[Prerequisite]:
        return list(self._prerequisites.get(project_id, []))

    async def load_pretest_questions(self, project_id: str) -> List[PretestQuestion]:
        return list(self._pretest_questions.get(project_id, []))

    async def record_rating(self, user_id: str, concept_id: str, rating: Rating) -> None:
        self.ratings.append(RecordedRating(user_id=user_id, concept_id=concept_id, rating=rating))
        logger.info("Recorded rating %s for concept %s (user %s)", rating.name, concept_id, user_id)

    async def record_sandbox_result(self, user_id: str, result: SandboxEvaluationResult) -> None:
        self.sandbox_results.append((user_id, result.model_copy(deep=True)))
        logger.info(
            "Recorded sandbox result %s for concept %s (user %s)",
            result.interaction_id,
            result.concept_id,
            user_id,
        )


__all__ = ["ContentStore", "InMemoryContentStore", "RecordedRating"]
