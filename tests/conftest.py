from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from session_engine.config import Settings
from session_engine.errors import CollaboratorError
from session_engine.models import Concept, SampleQuestion
from session_engine.telemetry import TelemetryEvent, clear_listeners, register_listener
from session_engine.text_generation import GenerationOptions, GenerationResult

Reply = Union[str, Dict[str, Any], BaseException]


class FakeGenerator:
    """TextGenerator double that replays canned replies and records calls."""

    def __init__(self, replies: Optional[List[Reply]] = None, *, respond: Optional[Callable[[str, str], Reply]] = None):
        self._replies = list(replies or [])
        self._respond = respond
        self.calls: List[Tuple[str, str, Optional[GenerationOptions]]] = []

    async def generate(
        self,
        system_prompt: str,
        user_message: str,
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        self.calls.append((system_prompt, user_message, options))
        if self._respond is not None:
            reply = self._respond(system_prompt, user_message)
        elif self._replies:
            reply = self._replies.pop(0)
        else:
            raise CollaboratorError("No canned reply left", "generation_failed")
        if isinstance(reply, BaseException):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return GenerationResult(content=content, model="fake-model")


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {"openai_api_key": None, "synthesis_intervals": [5]}
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


def make_concept(
    concept_id: str,
    *,
    name: Optional[str] = None,
    tier: int = 2,
    cognitive_type: str = "declarative",
    questions: int = 2,
    definition: Optional[str] = None,
) -> Concept:
    label = name or concept_id.replace("-", " ").title()
    return Concept(
        concept_id=concept_id,
        name=label,
        definition=definition if definition is not None else f"{label} is a core idea of the course.",
        tier=tier,
        cognitive_type=cognitive_type,  # type: ignore[arg-type]
        questions=[
            SampleQuestion(
                question_id=f"{concept_id}-q{index}",
                question_type="multiple_choice",
                prompt=f"Question {index} about {label}?",
                correct_answer=f"answer {index}",
                options=[f"answer {index}", "something else"],
            )
            for index in range(questions)
        ],
    )


@pytest.fixture(autouse=True)
def _reset_telemetry() -> Any:
    clear_listeners()
    yield
    clear_listeners()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def events() -> List[TelemetryEvent]:
    captured: List[TelemetryEvent] = []
    register_listener(captured.append)
    return captured
