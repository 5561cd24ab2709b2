from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from session_engine.logging_config import configure_logging, logging_levels
from session_engine.models import Rating, SandboxDeferral, SynthesisItem
from session_engine.telemetry import (
    TelemetryEvent,
    clear_listeners,
    emit_event,
    emit_session_event,
    register_listener,
    session_fields,
)


def test_listeners_receive_sanitized_payloads(events: list) -> None:
    emit_event("answer_graded", rating=Rating.GOOD, at=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc), item_id="x")

    assert events == [
        TelemetryEvent(
            name="answer_graded",
            payload={"rating": 3, "at": "2024-05-01T09:30:00+00:00", "item_id": "x"},
        )
    ]


def test_failing_listener_does_not_block_others(events: list) -> None:
    def explode(event: TelemetryEvent) -> None:
        raise RuntimeError("listener bug")

    clear_listeners()
    register_listener(explode)
    register_listener(events.append)

    emit_event("session_built", item_count=3)

    assert [event.name for event in events] == ["session_built"]


def test_clear_listeners_stops_delivery(events: list) -> None:
    clear_listeners()
    emit_event("session_built", item_count=0)
    assert events == []


def test_session_events_carry_item_identifiers(events: list) -> None:
    item = SynthesisItem(item_id="synthesis-1", concept_ids=["a", "b"], prompt="Connect a and b.")

    emit_session_event("answer_graded", "s1", item=item, is_correct=True)

    assert events[0].payload == {
        "session_id": "s1",
        "item_id": "synthesis-1",
        "kind": "synthesis",
        "concept_ids": ["a", "b"],
        "is_correct": True,
    }


def test_session_fields_without_item_only_name_the_session() -> None:
    assert session_fields("s2") == {"session_id": "s2"}


def test_nested_models_and_sequences_are_serialized(events: list) -> None:
    deferral = SandboxDeferral(reason="capacity", effective_capacity=1, minimum_capacity=2)

    emit_session_event("sandbox_deferred", "s3", deferral=deferral, ratings=(Rating.AGAIN, Rating.EASY))

    assert events[0].payload == {
        "session_id": "s3",
        "deferral": {"reason": "capacity", "effective_capacity": 1, "minimum_capacity": 2, "concept_ids": []},
        "ratings": [1, 4],
    }


def test_logging_levels_follow_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SESSION_ENGINE_LOG_LEVEL", "debug")
    monkeypatch.setenv("SESSION_ENGINE_TELEMETRY_LOG_LEVEL", "warning")
    monkeypatch.delenv("SESSION_ENGINE_DEBUG_HTTP", raising=False)

    assert logging_levels() == {
        "session_engine": "DEBUG",
        "session_engine.telemetry": "WARNING",
        "httpx": "WARNING",
        "openai": "WARNING",
    }


def test_debug_http_flag_opens_client_loggers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SESSION_ENGINE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("SESSION_ENGINE_TELEMETRY_LOG_LEVEL", raising=False)
    monkeypatch.setenv("SESSION_ENGINE_DEBUG_HTTP", "1")

    configure_logging()

    assert logging.getLogger("httpx").level == logging.DEBUG
    assert logging.getLogger("session_engine.telemetry").level == logging.INFO
