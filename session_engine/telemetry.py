"""In-process telemetry for session scheduling decisions.

Events about a learner session go through ``emit_session_event`` so every
payload carries the session id and, for item-level events, the item id, kind
and covered concepts in the same shape.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger("session_engine.telemetry")


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]


_listeners: List[Callable[[TelemetryEvent], None]] = []
_lock = RLock()


def register_listener(listener: Callable[[TelemetryEvent], None]) -> None:
    """Register an in-process listener (used in tests)."""
    with _lock:
        _listeners.append(listener)


def clear_listeners() -> None:
    """Remove all registered listeners. Mainly used to reset test state."""
    with _lock:
        _listeners.clear()


def emit_event(name: str, **fields: Any) -> None:
    """Emit a structured telemetry event and fan it out to listeners."""
    payload = _sanitize(fields)
    event = TelemetryEvent(name=name, payload=payload)

    with _lock:
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    structured = {"event": name, **payload}
    logger.info("TELEMETRY %s", json.dumps(structured, default=_json_default))


def session_fields(session_id: str, item: Optional[Any] = None) -> Dict[str, Any]:
    """Identifier fields shared by session-scoped events."""
    fields: Dict[str, Any] = {"session_id": session_id}
    if item is not None:
        fields["item_id"] = item.item_id
        fields["kind"] = item.kind
        fields["concept_ids"] = list(item.concept_ids)
    return fields


def emit_session_event(name: str, session_id: str, *, item: Optional[Any] = None, **fields: Any) -> None:
    emit_event(name, **session_fields(session_id, item), **fields)


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _sanitize_value(value) for key, value in fields.items()}


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(entry) for entry in value]
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


__all__ = [
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "emit_session_event",
    "register_listener",
    "session_fields",
]
