"""Typed failures raised by the session engine."""

from __future__ import annotations

from typing import Literal, Optional

ValidationErrorCode = Literal["invalid_concepts", "invalid_input"]
CollaboratorErrorCode = Literal[
    "rate_limited",
    "server_error",
    "timeout",
    "network_error",
    "api_key_invalid",
    "invalid_request",
    "json_parse_error",
    "placement_failed",
    "generation_failed",
    "max_retries_exceeded",
    "unknown_error",
]
StoreErrorCode = Literal["load_failed", "save_failed"]
StateErrorCode = Literal["invalid_transition", "no_active_item", "session_cancelled"]


class EngineError(Exception):
    """Base class carrying a machine-readable code and the original cause."""

    def __init__(
        self,
        message: str,
        code: str,
        *,
        cause: Optional[BaseException] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.cause = cause
        self.retryable = retryable
        if cause is not None:
            self.__cause__ = cause

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self), "retryable": self.retryable}


class EngineValidationError(EngineError):
    """Bad input. Surfaced to the caller and never retried."""

    def __init__(self, message: str, code: ValidationErrorCode = "invalid_input") -> None:
        super().__init__(message, code, retryable=False)


class CollaboratorError(EngineError):
    """Text-generation or placement service failure."""

    def __init__(
        self,
        message: str,
        code: CollaboratorErrorCode,
        *,
        cause: Optional[BaseException] = None,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code, cause=cause, retryable=retryable)
        self.status_code = status_code


class StoreError(EngineError):
    """Content or mastery store failure. Missing rows are not store errors."""

    def __init__(
        self,
        message: str,
        code: StoreErrorCode = "load_failed",
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, code, cause=cause, retryable=True)


class StateError(EngineError):
    """Operation invoked in a state that does not permit it."""

    def __init__(self, message: str, code: StateErrorCode = "invalid_transition") -> None:
        super().__init__(message, code, retryable=False)


__all__ = [
    "CollaboratorError",
    "EngineError",
    "EngineValidationError",
    "StateError",
    "StoreError",
]
